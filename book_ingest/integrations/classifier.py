from __future__ import annotations

import json
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Optional

import requests

from book_ingest.core.models import CanonicalFields, Classification
from book_ingest.core.taxonomy import PRIMARY_GENRES, SUB_GENRES, validate_genres, validate_subgenre

logger = logging.getLogger(__name__)

OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_MODEL = "meta-llama/llama-3.2-3b-instruct:free"
DEFAULT_TIMEOUT_S = 15.0
MAX_ATTEMPTS = 2
RETRY_DELAY_S = 1.0
DESCRIPTION_LIMIT = 500

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)

# title keyword -> canned classification, for local runs without an API key
_MOCK_RULES = (
    (("philosoph", "plato", "aristotle"), (("Philosophy", "Ethics"), "Ancient")),
    (("bible", "religion", "god", "church"), (("Religion", "Theology"), "Canonical Text")),
    (("history", "war", "empire"), (("History", "Biography"), "Medieval")),
    (("science", "math", "physics"), (("Science", "Mathematics"), None)),
    (("law", "legal", "court"), (("Law", "Politics"), "Legal Code")),
    (("poem", "poetry", "verse"), (("Literature", "Poetry"), "Classical")),
)
_MOCK_DEFAULT = (("Literature",), None)


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")


@dataclass(frozen=True)
class ClassifierConfig:
    api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    timeout_s: float = DEFAULT_TIMEOUT_S
    enabled: bool = True
    mock: bool = False

    @classmethod
    def from_env(cls) -> "ClassifierConfig":
        timeout = os.getenv("GENRE_CLASSIFIER_TIMEOUT", "").strip()
        return cls(
            api_key=(os.getenv("OPENROUTER_API_KEY") or "").strip() or None,
            model=(os.getenv("GENRE_CLASSIFIER_MODEL") or "").strip() or DEFAULT_MODEL,
            # milliseconds, like the other *_MS style knobs of the classifier service
            timeout_s=(int(timeout) / 1000.0) if timeout.isdigit() else DEFAULT_TIMEOUT_S,
            enabled=_env_bool("ENABLE_GENRE_CLASSIFICATION", True),
            mock=_env_bool("MOCK_GENRE_CLASSIFIER", False),
        )

    @property
    def active(self) -> bool:
        return self.enabled and (self.mock or bool(self.api_key))


def build_prompt(fields: CanonicalFields) -> str:
    description = (fields.description or "")[:DESCRIPTION_LIMIT] or "No description available"
    return (
        "You are a librarian classifying public-domain books. Analyze the book and assign genres.\n\n"
        "BOOK INFORMATION:\n"
        f"Title: {fields.title or 'Unknown'}\n"
        f"Author: {fields.author or 'Unknown'}\n"
        f"Year: {fields.year or 'Unknown'}\n"
        f"Description: {description}\n\n"
        "ALLOWED PRIMARY GENRES (choose 1-3):\n"
        f"{', '.join(PRIMARY_GENRES)}\n\n"
        "ALLOWED SUB-GENRES (choose 0-1):\n"
        f"{', '.join(SUB_GENRES)}\n\n"
        "RULES:\n"
        "1. Choose 1-3 primary genres that best describe the book\n"
        "2. Optionally choose 1 sub-genre if applicable\n"
        "3. Use ONLY genres from the lists above - do not invent new ones\n"
        "4. Respond with ONLY valid JSON, no explanations or extra text\n\n"
        "RESPONSE FORMAT (JSON only):\n"
        '{"genres": ["Genre1", "Genre2"], "subgenre": "SubGenre"}\n\n'
        'If no sub-genre applies, use: {"genres": ["Genre1"], "subgenre": null}'
    )


def parse_response(text: Optional[str]) -> Optional[Classification]:
    """
    Pull the first {...} block out of a model reply and validate it against the taxonomy.
    Returns None when nothing usable is left.
    """
    if not isinstance(text, str) or not text.strip():
        return None
    m = _JSON_OBJECT.search(text)
    raw = m.group(0) if m else text.strip()
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.debug("classifier reply is not json | preview=%s", raw[:120])
        return None
    if not isinstance(parsed, dict) or not isinstance(parsed.get("genres"), list):
        return None
    genres = validate_genres(parsed["genres"])
    if not genres:
        return None
    return Classification(genres=genres, subgenre=validate_subgenre(parsed.get("subgenre")))


def mock_classification(fields: CanonicalFields) -> Classification:
    title = (fields.title or "").lower()
    for keywords, (genres, sub) in _MOCK_RULES:
        if any(k in title for k in keywords):
            return Classification(genres=genres, subgenre=sub)
    genres, sub = _MOCK_DEFAULT
    return Classification(genres=genres, subgenre=sub)


class GenreClassifier:
    """
    OpenRouter chat-completions client. classify() never raises: any failure
    yields None and the caller files the book as uncategorized.
    """

    def __init__(
        self,
        config: ClassifierConfig,
        session: Optional[requests.Session] = None,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        retry_delay_s: float = RETRY_DELAY_S,
        sleep=time.sleep,
    ) -> None:
        self.config = config
        self.session = session or requests.Session()
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay_s = retry_delay_s
        self._sleep = sleep

    def _call_api(self, prompt: str) -> Optional[str]:
        r = self.session.post(
            OPENROUTER_API_URL,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.config.api_key}",
                "X-Title": "book-ingest",
            },
            json={
                "model": self.config.model,
                "messages": [{"role": "user", "content": prompt}],
                "max_tokens": 150,
                "temperature": 0.3,
            },
            timeout=self.config.timeout_s,
        )
        if r.status_code >= 400:
            logger.warning("classifier api error | status=%s", r.status_code)
            return None
        data = r.json()
        try:
            return data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            logger.warning("classifier reply has unexpected shape")
            return None

    def classify(self, fields: CanonicalFields) -> Optional[Classification]:
        if not self.config.enabled or not fields.title:
            return None
        if self.config.mock:
            return mock_classification(fields)
        if not self.config.api_key:
            return None

        prompt = build_prompt(fields)
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = parse_response(self._call_api(prompt))
            except (requests.RequestException, ValueError) as e:
                logger.warning(
                    "classifier request failed | attempt=%s/%s | err=%r",
                    attempt,
                    self.max_attempts,
                    e,
                )
                result = None
            if result is not None:
                return result
            if attempt < self.max_attempts:
                self._sleep(self.retry_delay_s)
        logger.info("classification unavailable | title=%s", fields.title[:80])
        return None

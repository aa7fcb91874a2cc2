from __future__ import annotations

import re
from typing import Iterable, List, Optional, Union

from .models import CanonicalFields, RawItem

MIN_YEAR = 1000
MAX_YEAR = 2999
UNTITLED = "Untitled"

_YEAR_TOKEN = re.compile(r"(?<!\d)(\d{4})(?!\d)")
_WS = re.compile(r"\s+")

LANGUAGE_CODES = {
    "english": "eng",
    "en": "eng",
    "en-us": "eng",
    "en-gb": "eng",
    "french": "fre",
    "fr": "fre",
    "german": "ger",
    "de": "ger",
    "spanish": "spa",
    "es": "spa",
    "italian": "ita",
    "it": "ita",
    "portuguese": "por",
    "pt": "por",
    "russian": "rus",
    "ru": "rus",
    "chinese": "chi",
    "zh": "chi",
    "japanese": "jpn",
    "ja": "jpn",
    "latin": "lat",
    "la": "lat",
}


def _clean(s: object) -> str:
    return _WS.sub(" ", str(s)).strip()


def _blank_to_none(s: Optional[str]) -> Optional[str]:
    if s is None:
        return None
    s = _clean(s)
    return s or None


def _string_list(values: Iterable[object]) -> List[str]:
    return [_clean(v) for v in values if isinstance(v, str) and _clean(v)]


def identifier_key(identifier: object) -> str:
    """Dedup key for a provider id: outer whitespace dropped, otherwise opaque."""
    if identifier is None:
        return ""
    return str(identifier).strip()


def extract_year(date: Union[str, int, None]) -> Optional[int]:
    """First 4-digit token in [MIN_YEAR, MAX_YEAR], or None. Never raises."""
    if date is None or isinstance(date, bool):
        return None
    if isinstance(date, int):
        return date if MIN_YEAR <= date <= MAX_YEAR else None
    for m in _YEAR_TOKEN.finditer(str(date)):
        year = int(m.group(1))
        if MIN_YEAR <= year <= MAX_YEAR:
            return year
    return None


def normalize_author(creator: Union[str, List[str], None]) -> Optional[str]:
    if creator is None:
        return None
    if isinstance(creator, (list, tuple)):
        names = [v.strip() for v in creator if isinstance(v, str) and v.strip()]
        return ", ".join(names) if names else None
    if isinstance(creator, dict):
        creator = creator.get("name")
    if not isinstance(creator, str):
        return None
    return creator.strip() or None


def normalize_title(title: Optional[str]) -> str:
    if not isinstance(title, str):
        return UNTITLED
    return _clean(title) or UNTITLED


def normalize_language(language: Union[str, List[str], None]) -> Optional[str]:
    if isinstance(language, (list, tuple)):
        codes = _string_list(language)
        language = codes[0] if codes else None
    if not isinstance(language, str):
        return None
    code = language.strip().lower()
    if not code:
        return None
    return LANGUAGE_CODES.get(code, code[:3])


def normalize_description(description: Union[str, List[str], None]) -> Optional[str]:
    if isinstance(description, (list, tuple)):
        parts = _string_list(description)
        return " ".join(parts) if parts else None
    if not isinstance(description, str):
        return None
    return _blank_to_none(description)


def normalize(raw: RawItem, source_id: str) -> CanonicalFields:
    """Map a provider item onto the canonical field set. Same input, same output."""
    return CanonicalFields(
        title=normalize_title(raw.title),
        author=normalize_author(raw.creator),
        year=extract_year(raw.date),
        language=normalize_language(raw.language),
        description=normalize_description(raw.description),
        source=source_id,
        source_identifier=identifier_key(raw.identifier),
        download_url=_blank_to_none(raw.download_url),
        cover_url=_blank_to_none(raw.cover_url),
        isbn=_blank_to_none(raw.isbn),
    )

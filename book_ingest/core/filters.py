from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from .taxonomy import validate_genre

logger = logging.getLogger(__name__)

GENRE_FILTER = "genre"
AUTHOR_FILTER = "author"


def _env_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")


def _split_list(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(p.strip() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class FilterConfig:
    enable_genre_filter: bool = False
    allowed_genres: Tuple[str, ...] = ()
    enable_author_filter: bool = False
    allowed_authors: Tuple[str, ...] = ()

    @classmethod
    def from_env(cls) -> "FilterConfig":
        return cls(
            enable_genre_filter=_env_bool("ENABLE_GENRE_FILTER"),
            allowed_genres=_split_list(os.getenv("INGEST_ALLOWED_GENRES")),
            enable_author_filter=_env_bool("ENABLE_AUTHOR_FILTER"),
            allowed_authors=_split_list(os.getenv("INGEST_ALLOWED_AUTHORS")),
        )

    @property
    def genre_active(self) -> bool:
        return self.enable_genre_filter and bool(self.allowed_genres)

    @property
    def author_active(self) -> bool:
        return self.enable_author_filter and bool(self.allowed_authors)


@dataclass(frozen=True)
class FilterOutcome:
    passed: bool
    filter_name: Optional[str] = None
    reason: Optional[str] = None
    value: Optional[str] = None


PASSED = FilterOutcome(passed=True)


class FilterEngine:
    """
    Allow-list gates applied after classification.

    An enabled gate with an empty allow-list lets everything through. With both gates
    active an item must pass both; the genre gate is evaluated first.
    """

    def __init__(self, config: FilterConfig) -> None:
        self.config = config
        self._authors_lower = tuple(a.lower() for a in config.allowed_authors)
        if config.enable_genre_filter and not config.allowed_genres:
            logger.warning("genre filter enabled with empty allow-list | effect=allow_all")
        if config.enable_author_filter and not config.allowed_authors:
            logger.warning("author filter enabled with empty allow-list | effect=allow_all")
        unknown = self.validate_genre_names(config.allowed_genres)
        if unknown:
            logger.warning("allow-list genres outside taxonomy | genres=%s", ",".join(unknown))

    def has_active_filters(self) -> bool:
        return self.config.genre_active or self.config.author_active

    def evaluate(self, genres: Sequence[str], author: Optional[str]) -> FilterOutcome:
        cfg = self.config
        if cfg.genre_active:
            hit = [g for g in genres if g in cfg.allowed_genres]
            if not hit:
                return FilterOutcome(
                    passed=False,
                    filter_name=GENRE_FILTER,
                    reason="no genre in allow-list",
                    value=", ".join(genres) if genres else "(none)",
                )
        if cfg.author_active:
            a = (author or "").lower()
            if not a or not any(allowed in a for allowed in self._authors_lower):
                return FilterOutcome(
                    passed=False,
                    filter_name=AUTHOR_FILTER,
                    reason="author not in allow-list",
                    value=author or "(none)",
                )
        return PASSED

    @staticmethod
    def validate_genre_names(names: Iterable[str]) -> List[str]:
        """Allow-list entries that do not exactly match a taxonomy genre."""
        return [n for n in names if validate_genre(n) != n]

    def summary(self) -> str:
        cfg = self.config
        if not self.has_active_filters():
            return "No active filters (all items pass)"
        parts: List[str] = []
        if cfg.genre_active:
            parts.append(f"Genre filter: {', '.join(cfg.allowed_genres)}")
        if cfg.author_active:
            parts.append(f"Author filter: {', '.join(cfg.allowed_authors)}")
        return " AND ".join(parts)

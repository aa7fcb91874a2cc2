from __future__ import annotations

import abc
import logging
from typing import Any, Dict, List, Optional

import requests

from book_ingest.core.errors import FetcherContractError
from book_ingest.core.models import FetchOptions, RawItem, SourceMetadata
from book_ingest.integrations.http_client import make_session

logger = logging.getLogger(__name__)

REQUIRED_METHODS = ("source_id", "metadata", "fetch_items", "resolve_asset_url")


class Fetcher(abc.ABC):
    """
    Provider adapter. One subclass per content source.

    Fetchers hold no pagination state: the caller passes `page` on every call.
    They raise TransportError / RateLimitedError / HttpStatusError for availability
    problems and return [] for "no results".
    """

    SOURCE_ID = ""
    # True when resolve_asset_url() itself hits the provider (so the caller rate limits it)
    RESOLVE_IS_REMOTE = False

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        *,
        timeout_s: float = 30,
        settings: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.session = session or make_session()
        self.timeout_s = timeout_s
        self.settings: Dict[str, Any] = dict(settings or {})

    def source_id(self) -> str:
        return self.SOURCE_ID

    def configure(self, settings: Optional[Dict[str, Any]]) -> None:
        """Apply per-source settings loaded from the configuration store."""
        self.settings = dict(settings or {})

    @abc.abstractmethod
    def metadata(self) -> SourceMetadata:
        raise NotImplementedError

    @abc.abstractmethod
    def fetch_items(self, options: FetchOptions) -> List[RawItem]:
        raise NotImplementedError

    @abc.abstractmethod
    def resolve_asset_url(self, item_id: str, preferred_format: str = "pdf") -> Optional[str]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} source_id={self.SOURCE_ID!r}>"


def validate_fetcher(obj: object) -> List[str]:
    """Names of contract members that are missing or not callable."""
    missing: List[str] = []
    for name in REQUIRED_METHODS:
        member = getattr(obj, name, None)
        if member is None or not callable(member):
            missing.append(name)
    return missing


def check_fetcher(obj: object) -> None:
    missing = validate_fetcher(obj)
    if missing:
        raise FetcherContractError(f"missing contract members: {', '.join(missing)}")

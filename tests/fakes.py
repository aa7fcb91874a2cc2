from __future__ import annotations

from typing import Dict, List, Optional

import requests

from book_ingest.assets.validator import ContentValidator
from book_ingest.assets.writer import LocalAssetWriter
from book_ingest.core.dedup import DedupEngine
from book_ingest.core.errors import TransportError
from book_ingest.core.filters import FilterConfig, FilterEngine
from book_ingest.core.models import FetchOptions, RawItem, SourceMetadata
from book_ingest.core.retry import IntervalLimiter, RetryPolicy
from book_ingest.core.store import CatalogStore
from book_ingest.fetchers.base import Fetcher
from book_ingest.fetchers.registry import SourceRegistry
from book_ingest.orchestrator import JobControl, Orchestrator

PDF_BYTES = b"%PDF-1.4\n" + b"x" * 2048


def no_sleep(_s: float) -> None:
    return None


def fast_retry(**kwargs) -> RetryPolicy:
    kwargs.setdefault("sleep", no_sleep)
    kwargs.setdefault("jitter_s", 0.0)
    return RetryPolicy(**kwargs)


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        *,
        json_data=None,
        text: str = "",
        content: Optional[bytes] = None,
        headers: Optional[dict] = None,
    ) -> None:
        self.status_code = status_code
        self._json = json_data
        self.headers = dict(headers or {})
        if content is None:
            content = text.encode("utf-8") if text else (b"{}" if json_data is not None else b"")
        self.content = content
        self.text = text or (content.decode("utf-8", "replace") if content else "")
        self.closed = False

    def json(self):
        if self._json is None:
            raise ValueError("no json")
        return self._json

    def iter_content(self, chunk_size: int = 1024):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i : i + chunk_size]

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """
    url -> response, exception, or list of those (consumed in order; the last one repeats).
    Every call is recorded in .calls as (method, url, params).
    """

    def __init__(self, routes: Optional[Dict[str, object]] = None) -> None:
        self.routes: Dict[str, object] = dict(routes or {})
        self.calls: List[tuple] = []
        self.headers: Dict[str, str] = {}

    def _answer(self, method: str, url: str, params=None):
        self.calls.append((method, url, params))
        if url not in self.routes:
            return FakeResponse(404, text="not found")
        route = self.routes[url]
        if isinstance(route, list):
            value = route.pop(0) if len(route) > 1 else route[0]
        else:
            value = route
        if isinstance(value, Exception):
            raise value
        return value

    def get(self, url, params=None, timeout=None, stream=False, **kwargs):
        return self._answer("GET", url, params)

    def post(self, url, headers=None, json=None, timeout=None, **kwargs):
        return self._answer("POST", url, json)


def make_item(item_id: str, title: str = "A Book", *, author="Jane Doe", url: Optional[str] = None) -> RawItem:
    return RawItem(
        identifier=item_id,
        title=title,
        creator=author,
        date="1901",
        language="en",
        download_url=url or f"https://files.test/{item_id}.pdf",
        formats=("pdf",),
    )


class FakeFetcher(Fetcher):
    """Serves canned pages; `fail_pages` raise TransportError."""

    def __init__(
        self,
        source_id: str,
        pages: Dict[int, List[RawItem]],
        *,
        fail_pages=(),
        rate_limit_ms: int = 0,
    ) -> None:
        super().__init__(session=FakeSession())
        self.SOURCE_ID = source_id
        self.pages = pages
        self.fail_pages = set(fail_pages)
        self.rate_limit_ms = rate_limit_ms
        self.fetch_calls: List[FetchOptions] = []

    def metadata(self) -> SourceMetadata:
        return SourceMetadata(display_name=self.SOURCE_ID.title(), default_rate_limit_ms=self.rate_limit_ms or 1)

    def fetch_items(self, options: FetchOptions) -> List[RawItem]:
        self.fetch_calls.append(options)
        if options.page in self.fail_pages:
            raise TransportError(f"{self.SOURCE_ID} unreachable")
        return list(self.pages.get(options.page, []))[: options.batch_size]

    def resolve_asset_url(self, item_id: str, preferred_format: str = "pdf") -> Optional[str]:
        return f"https://files.test/{item_id}.pdf"


def pdf_routes(items: List[RawItem], bad_ids=()) -> Dict[str, object]:
    routes: Dict[str, object] = {}
    for it in items:
        if it.identifier in bad_ids:
            routes[it.download_url] = FakeResponse(200, content=b"<html>not a pdf</html>")
        else:
            routes[it.download_url] = FakeResponse(200, content=PDF_BYTES)
    return routes


def build_pipeline(
    tmp_path,
    fetchers: List[Fetcher],
    download_session: FakeSession,
    *,
    enable: bool = True,
    priorities: Optional[Dict[str, int]] = None,
    filters: Optional[FilterConfig] = None,
    classifier=None,
    covers=None,
    control: Optional[JobControl] = None,
    store: Optional[CatalogStore] = None,
):
    store = store or CatalogStore(str(tmp_path / "catalog.db"))
    registry = SourceRegistry(store)
    for f in fetchers:
        registry.register(f)
    if enable:
        registry.load_configurations(persist=True)
        for f in fetchers:
            registry.update_configuration(
                f.source_id(),
                enabled=True,
                priority=(priorities or {}).get(f.source_id(), 10),
            )
    retry = fast_retry()
    orch = Orchestrator(
        registry=registry,
        store=store,
        dedup=DedupEngine(store),
        classifier=classifier,
        filters=FilterEngine(filters or FilterConfig()),
        validator=ContentValidator(download_session, retry=retry),
        writer=LocalAssetWriter(str(tmp_path / "assets"), "https://cdn.test"),
        covers=covers,
        retry=retry,
        control=control or JobControl(),
        limiter_factory=lambda ms: IntervalLimiter(ms, sleep=no_sleep),
    )
    return orch, store, registry


def connection_error() -> requests.ConnectionError:
    return requests.ConnectionError("connection reset")

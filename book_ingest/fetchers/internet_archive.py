from __future__ import annotations

import logging
from typing import List, Optional
from urllib.parse import quote

from book_ingest.core.models import FetchOptions, RawItem, SourceMetadata
from book_ingest.integrations.http_client import get_json

from .base import Fetcher

logger = logging.getLogger(__name__)

SEARCH_URL = "https://archive.org/advancedsearch.php"
DEFAULT_QUERY = "mediatype:texts AND format:pdf AND date:[* TO 1927]"
FIELDS = ("identifier", "title", "creator", "date", "language", "description")


def download_url(identifier: str, fmt: str = "pdf") -> str:
    ident = quote(identifier, safe="")
    return f"https://archive.org/download/{ident}/{ident}.{fmt}"


def cover_url(identifier: str) -> str:
    return f"https://archive.org/services/img/{quote(identifier, safe='')}"


def build_search_params(options: FetchOptions, query: str = DEFAULT_QUERY) -> list:
    q = query
    if options.language:
        q = f"{q} AND language:({options.language})"
    params = [("q", q)]
    params.extend(("fl[]", f) for f in FIELDS)
    params.extend([
        ("sort[]", "downloads desc"),
        ("rows", str(max(1, int(options.batch_size)))),
        ("page", str(max(1, int(options.page)))),
        ("output", "json"),
    ])
    return params


def parse_doc(doc: dict) -> Optional[RawItem]:
    ident = doc.get("identifier")
    if not isinstance(ident, str) or not ident.strip():
        return None
    ident = ident.strip()
    return RawItem(
        identifier=ident,
        title=doc.get("title"),
        creator=doc.get("creator"),
        date=doc.get("date"),
        language=doc.get("language"),
        description=doc.get("description"),
        download_url=download_url(ident),
        cover_url=cover_url(ident),
        formats=("pdf",),
    )


class InternetArchiveFetcher(Fetcher):
    """Public-domain texts with a PDF derivative, most downloaded first."""

    SOURCE_ID = "internet_archive"

    def metadata(self) -> SourceMetadata:
        return SourceMetadata(
            display_name="Internet Archive",
            default_rate_limit_ms=1500,
            default_batch_size=30,
            supported_formats=("pdf",),
            description="Public-domain texts published before 1928",
            website="https://archive.org",
        )

    def fetch_items(self, options: FetchOptions) -> List[RawItem]:
        query = self.settings.get("query") or DEFAULT_QUERY
        data = get_json(
            self.session,
            SEARCH_URL,
            params=build_search_params(options, query),
            timeout_s=self.timeout_s,
        )
        docs = ((data or {}).get("response") or {}).get("docs")
        if not isinstance(docs, list):
            logger.info("no documents | source=%s | page=%s", self.SOURCE_ID, options.page)
            return []
        items = [it for it in (parse_doc(d) for d in docs if isinstance(d, dict)) if it]
        logger.debug("fetched | source=%s | page=%s | items=%s", self.SOURCE_ID, options.page, len(items))
        return items

    def resolve_asset_url(self, item_id: str, preferred_format: str = "pdf") -> Optional[str]:
        if not item_id or preferred_format != "pdf":
            return None
        return download_url(item_id, preferred_format)

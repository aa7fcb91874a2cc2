from __future__ import annotations

import logging
from typing import Dict, List, Optional

from book_ingest.core.models import FetchOptions, RawItem, SourceMetadata
from book_ingest.integrations.http_client import get_json

from .base import Fetcher

logger = logging.getLogger(__name__)

GUTENDEX_URL = "https://gutendex.com/books/"
GUTENDEX_PAGE_SIZE = 32

MIME_BY_FORMAT = {
    "pdf": ("application/pdf",),
    "epub": ("application/epub+zip",),
}


def pick_format_url(formats: Dict[str, str], fmt: str) -> Optional[str]:
    """Download URL for `fmt` from a Gutendex formats map (mime types may carry parameters)."""
    for mime in MIME_BY_FORMAT.get(fmt, ()):
        for key, url in (formats or {}).items():
            if key.split(";")[0].strip() == mime and isinstance(url, str) and url:
                # zipped variants are not the asset itself
                if url.endswith(".zip"):
                    continue
                return url
    return None


def parse_book(book: dict) -> Optional[RawItem]:
    book_id = book.get("id")
    if book_id is None:
        return None
    formats = book.get("formats") or {}
    authors = [a.get("name") for a in (book.get("authors") or []) if isinstance(a, dict)]
    summaries = book.get("summaries") or []
    available = tuple(f for f in MIME_BY_FORMAT if pick_format_url(formats, f))
    first_year = None
    for a in book.get("authors") or []:
        if isinstance(a, dict) and a.get("death_year"):
            first_year = str(a["death_year"])
            break
    return RawItem(
        identifier=str(book_id),
        title=book.get("title"),
        creator=authors or None,
        # Gutendex has no publication date; the author's death year is the closest bound
        date=first_year,
        language=book.get("languages"),
        description=summaries or None,
        download_url=pick_format_url(formats, "pdf") or pick_format_url(formats, "epub"),
        cover_url=formats.get("image/jpeg"),
        formats=available,
        extra={"formats": dict(formats), "subjects": list(book.get("subjects") or [])},
    )


class GutenbergFetcher(Fetcher):
    """Project Gutenberg catalogue through the Gutendex JSON API."""

    SOURCE_ID = "project_gutenberg"
    RESOLVE_IS_REMOTE = True

    def metadata(self) -> SourceMetadata:
        return SourceMetadata(
            display_name="Project Gutenberg",
            default_rate_limit_ms=2000,
            default_batch_size=30,
            supported_formats=("pdf", "epub"),
            description="Free eBooks from the Project Gutenberg catalogue",
            website="https://www.gutenberg.org",
        )

    def _api_page(self, page: int, language: Optional[str]) -> dict:
        params = {"page": str(page)}
        if language:
            params["languages"] = language
        topic = self.settings.get("topic")
        if topic:
            params["topic"] = str(topic)
        return get_json(self.session, GUTENDEX_URL, params=params, timeout_s=self.timeout_s) or {}

    def fetch_items(self, options: FetchOptions) -> List[RawItem]:
        # Caller pages are batch_size wide; Gutendex pages are fixed at 32.
        batch = max(1, int(options.batch_size))
        start = (max(1, int(options.page)) - 1) * batch
        api_page = start // GUTENDEX_PAGE_SIZE + 1
        skip = start % GUTENDEX_PAGE_SIZE

        items: List[RawItem] = []
        while len(items) < batch:
            data = self._api_page(api_page, options.language)
            results = data.get("results") or []
            for book in results[skip:]:
                if not isinstance(book, dict):
                    continue
                item = parse_book(book)
                if item:
                    items.append(item)
                if len(items) >= batch:
                    break
            skip = 0
            if not data.get("next") or not results:
                break
            api_page += 1
        logger.debug("fetched | source=%s | page=%s | items=%s", self.SOURCE_ID, options.page, len(items))
        return items

    def resolve_asset_url(self, item_id: str, preferred_format: str = "pdf") -> Optional[str]:
        if not item_id:
            return None
        book = get_json(self.session, f"{GUTENDEX_URL}{item_id}", timeout_s=self.timeout_s)
        if not isinstance(book, dict):
            return None
        return pick_format_url(book.get("formats") or {}, preferred_format)

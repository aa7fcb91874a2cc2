from __future__ import annotations

import hashlib
import logging
import re
from typing import List, Optional
from urllib.parse import unquote, urljoin, urlparse

from book_ingest.core.models import FetchOptions, RawItem, SourceMetadata
from book_ingest.integrations.http_client import get_text

from .base import Fetcher

logger = logging.getLogger(__name__)

ANCHOR_RE = re.compile(r"""<a\s+[^>]*href\s*=\s*["']([^"']+)["'][^>]*>""", re.IGNORECASE)
_SKIP_SCHEMES = ("javascript:", "mailto:", "tel:", "data:", "#")


def is_pdf_url(url: str) -> bool:
    try:
        path = urlparse(url).path
    except ValueError:
        return url.lower().endswith(".pdf")
    return path.lower().endswith(".pdf")


def to_absolute_url(href: str, base_url: str) -> str:
    return urljoin(base_url, href.strip())


def extract_links(html: str, base_url: str) -> List[str]:
    links: List[str] = []
    for m in ANCHOR_RE.finditer(html or ""):
        href = m.group(1).strip()
        if not href or href.lower().startswith(_SKIP_SCHEMES):
            continue
        links.append(to_absolute_url(href, base_url))
    return links


def pdf_links(html: str, base_url: str) -> List[str]:
    """Absolute .pdf links in page order, without repeats."""
    return list(dict.fromkeys(u for u in extract_links(html, base_url) if is_pdf_url(u)))


def title_from_url(url: str) -> Optional[str]:
    name = unquote(urlparse(url).path.rsplit("/", 1)[-1])
    if name.lower().endswith(".pdf"):
        name = name[:-4]
    name = re.sub(r"[_\-]+", " ", name).strip()
    return name or None


def item_id_for_url(url: str) -> str:
    """Stable id: readable stem plus a short digest of the full URL."""
    stem = (title_from_url(url) or "document").replace(" ", "-")[:80]
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:10]
    return f"{stem}-{digest}"


class PdfSiteFetcher(Fetcher):
    """
    Discovers PDFs linked from one configured page (settings["url"]).

    Only that page is read; linked pages are never followed. Discovered links are
    paginated by batch_size.
    """

    SOURCE_ID = "pdf_site"
    RESOLVE_IS_REMOTE = True

    def metadata(self) -> SourceMetadata:
        return SourceMetadata(
            display_name="PDF Site",
            default_rate_limit_ms=1500,
            default_batch_size=30,
            supported_formats=("pdf",),
            description="PDF documents linked from a single configured web page",
            website=str(self.settings.get("url") or ""),
        )

    def _discover(self) -> List[str]:
        page_url = (self.settings.get("url") or "").strip()
        if not page_url:
            logger.warning("no page configured | source=%s | setting=url", self.SOURCE_ID)
            return []
        html = get_text(self.session, page_url, timeout_s=self.timeout_s)
        return pdf_links(html, page_url)

    def fetch_items(self, options: FetchOptions) -> List[RawItem]:
        links = self._discover()
        batch = max(1, int(options.batch_size))
        start = (max(1, int(options.page)) - 1) * batch
        items = [
            RawItem(
                identifier=item_id_for_url(url),
                title=title_from_url(url),
                creator=None,
                download_url=url,
                formats=("pdf",),
                extra={"page_url": self.settings.get("url")},
            )
            for url in links[start : start + batch]
        ]
        logger.debug(
            "fetched | source=%s | page=%s | discovered=%s | items=%s",
            self.SOURCE_ID,
            options.page,
            len(links),
            len(items),
        )
        return items

    def resolve_asset_url(self, item_id: str, preferred_format: str = "pdf") -> Optional[str]:
        if not item_id or preferred_format != "pdf":
            return None
        for url in self._discover():
            if item_id_for_url(url) == item_id:
                return url
        return None

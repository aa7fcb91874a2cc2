from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import requests

from book_ingest.core.errors import HttpStatusError, TransportError
from book_ingest.core.models import CanonicalFields, CoverResult, Notification
from book_ingest.integrations.http_client import get_json, make_session

logger = logging.getLogger(__name__)

OPENLIBRARY_SEARCH_URL = "https://openlibrary.org/search.json"
COVER_BY_ID = "https://covers.openlibrary.org/b/id/{}-M.jpg"
COVER_BY_ISBN = "https://covers.openlibrary.org/b/isbn/{}-M.jpg"
SOURCE_OPENLIBRARY = "openlibrary"
SOURCE_PROVIDER = "provider"
NOTIFY_COVER_FAILED = "cover_search_failed"


def cover_from_doc(doc: dict) -> Optional[str]:
    if doc.get("cover_i"):
        return COVER_BY_ID.format(doc["cover_i"])
    isbns = doc.get("isbn") or []
    if isbns:
        return COVER_BY_ISBN.format(isbns[0])
    return None


class CoverSearch:
    """
    Open Library cover lookup. ISBN search when one is known, else title + author.

    Failures are retried `attempts` times with a fixed delay; when they run out a
    cover_search_failed notification is emitted and the book goes in without a cover.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        *,
        timeout_s: float = 15,
        attempts: int = 3,
        delay_s: float = 1.0,
        notify: Optional[Callable[[Notification], None]] = None,
        sleep=time.sleep,
    ) -> None:
        self.session = session or make_session()
        self.timeout_s = timeout_s
        self.attempts = max(1, int(attempts))
        self.delay_s = delay_s
        self.notify = notify
        self._sleep = sleep

    def _params(self, fields: CanonicalFields) -> dict:
        if fields.isbn:
            return {"isbn": fields.isbn, "limit": "1", "fields": "cover_i,isbn"}
        params = {"title": fields.title, "limit": "1", "fields": "cover_i,isbn"}
        if fields.author:
            params["author"] = fields.author
        return params

    def _search_once(self, fields: CanonicalFields) -> CoverResult:
        data = get_json(self.session, OPENLIBRARY_SEARCH_URL, params=self._params(fields), timeout_s=self.timeout_s)
        for doc in (data or {}).get("docs") or []:
            if isinstance(doc, dict):
                url = cover_from_doc(doc)
                if url:
                    return CoverResult(url=url, source=SOURCE_OPENLIBRARY)
        if fields.isbn:
            return CoverResult(url=COVER_BY_ISBN.format(fields.isbn), source=SOURCE_OPENLIBRARY)
        return CoverResult(url=None, source=SOURCE_OPENLIBRARY, placeholder=True)

    def search(self, fields: CanonicalFields) -> CoverResult:
        if fields.cover_url:
            return CoverResult(url=fields.cover_url, source=SOURCE_PROVIDER)

        last_err: Optional[Exception] = None
        for attempt in range(1, self.attempts + 1):
            try:
                return self._search_once(fields)
            except (TransportError, HttpStatusError) as e:
                last_err = e
                logger.warning(
                    "cover search failed | attempt=%s/%s | title=%s | err=%s",
                    attempt,
                    self.attempts,
                    fields.title[:80],
                    e,
                )
                if attempt < self.attempts:
                    self._sleep(self.delay_s)

        if self.notify is not None:
            self.notify(
                Notification(
                    name=NOTIFY_COVER_FAILED,
                    subject=f"{fields.source}/{fields.source_identifier}",
                    message=f"cover search failed after {self.attempts} attempts: {last_err}",
                    ts=time.time(),
                )
            )
        return CoverResult(url=None, source=SOURCE_OPENLIBRARY)

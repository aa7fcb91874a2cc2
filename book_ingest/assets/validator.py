from __future__ import annotations

import logging
import re
import tempfile
from dataclasses import dataclass
from typing import IO, Optional

import requests

from book_ingest.core.errors import (
    ContentInvalidError,
    HttpStatusError,
    IngestError,
    TransportError,
)
from book_ingest.core.retry import IntervalLimiter, RetryPolicy
from book_ingest.integrations.http_client import http_get

logger = logging.getLogger(__name__)

MAX_FILENAME_LENGTH = 200
DEFAULT_MAX_BYTES = 100 * 1024 * 1024
SPOOL_MAX_BYTES = 8 * 1024 * 1024
CHUNK_SIZE = 64 * 1024

MAGIC_BYTES = {
    "pdf": b"%PDF",
    "epub": b"PK\x03\x04",
}
CONTENT_TYPES = {
    "pdf": "application/pdf",
    "epub": "application/epub+zip",
}

_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")
_UNDERSCORES = re.compile(r"_+")
_SAFE_NAME = re.compile(r"^[A-Za-z0-9-](?:[A-Za-z0-9_-]*[A-Za-z0-9-])?$")


def sanitize_filename(name: Optional[str], max_len: int = MAX_FILENAME_LENGTH) -> str:
    """
    Storage-safe name: only [A-Za-z0-9_-], no runs of "_", no edge "_",
    never empty, at most `max_len` chars.
    """
    s = _UNSAFE.sub("_", name or "")
    s = _UNDERSCORES.sub("_", s).strip("_")
    s = s[: max(1, int(max_len))].rstrip("_")
    return s or "unnamed"


def is_valid_filename(name: str, max_len: int = MAX_FILENAME_LENGTH) -> bool:
    return bool(name) and len(name) <= max_len and "__" not in name and bool(_SAFE_NAME.match(name))


def storage_path(source_id: str, item_id: str, fmt: str = "pdf") -> str:
    return f"{sanitize_filename(source_id)}/{sanitize_filename(item_id)}.{sanitize_filename(fmt)}"


def content_type_for(fmt: str) -> str:
    return CONTENT_TYPES.get(fmt, "application/octet-stream")


@dataclass
class ValidationResult:
    valid: bool
    reason: Optional[str] = None
    asset: Optional[IO[bytes]] = None
    size: int = 0
    transient: bool = False

    def close(self) -> None:
        if self.asset is not None:
            try:
                self.asset.close()
            finally:
                self.asset = None


class ContentValidator:
    """
    Downloads an asset into a spooled temp file and checks it before anything is stored.

    Valid iff: HTTP success, non-empty, within max_bytes, leading magic bytes match the
    expected format. The caller owns result.asset and must close() it.
    """

    def __init__(
        self,
        session: requests.Session,
        *,
        retry: Optional[RetryPolicy] = None,
        timeout_s: float = 30,
        max_bytes: int = DEFAULT_MAX_BYTES,
        spool_bytes: int = SPOOL_MAX_BYTES,
    ) -> None:
        self.session = session
        self.retry = retry or RetryPolicy()
        self.timeout_s = timeout_s
        self.max_bytes = int(max_bytes)
        self.spool_bytes = int(spool_bytes)

    def _download(self, url: str, expected_format: str, limiter: Optional[IntervalLimiter]) -> ValidationResult:
        if limiter is not None:
            limiter.take()
        resp = http_get(self.session, url, timeout_s=self.timeout_s, stream=True)
        try:
            declared = resp.headers.get("Content-Length")
            if declared and declared.isdigit() and int(declared) > self.max_bytes:
                raise ContentInvalidError(f"declared size {declared} exceeds limit {self.max_bytes}")

            buf = tempfile.SpooledTemporaryFile(max_size=self.spool_bytes)
            size = 0
            try:
                for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                    if not chunk:
                        continue
                    size += len(chunk)
                    if size > self.max_bytes:
                        raise ContentInvalidError(f"size exceeds limit {self.max_bytes}")
                    buf.write(chunk)
            except requests.RequestException as e:
                buf.close()
                raise TransportError(f"download interrupted: {url} error={e}") from e
            except Exception:
                buf.close()
                raise

            if size == 0:
                buf.close()
                raise ContentInvalidError("empty body")
            buf.seek(0)
            magic = MAGIC_BYTES.get(expected_format)
            if magic is not None and buf.read(len(magic)) != magic:
                buf.close()
                raise ContentInvalidError(f"not a {expected_format}: bad leading bytes")
            buf.seek(0)
            return ValidationResult(valid=True, asset=buf, size=size)
        finally:
            resp.close()

    def validate(
        self,
        url: str,
        expected_format: str = "pdf",
        *,
        limiter: Optional[IntervalLimiter] = None,
    ) -> ValidationResult:
        if not url:
            return ValidationResult(valid=False, reason="no url")
        try:
            result = self.retry.call(self._download, url, expected_format, limiter, label="download")
        except ContentInvalidError as e:
            logger.warning("asset invalid | url=%s | reason=%s", url, e)
            return ValidationResult(valid=False, reason=str(e))
        except HttpStatusError as e:
            logger.warning("asset unavailable | url=%s | status=%s", url, e.status_code)
            return ValidationResult(valid=False, reason=f"http {e.status_code}")
        except TransportError as e:
            logger.warning("asset download failed | url=%s | err=%s", url, e)
            return ValidationResult(valid=False, reason=str(e), transient=True)
        except IngestError as e:
            return ValidationResult(valid=False, reason=str(e))
        logger.debug("asset valid | url=%s | bytes=%s", url, result.size)
        return result

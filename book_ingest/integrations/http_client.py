from __future__ import annotations

import json
import logging
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

from book_ingest.core.errors import HttpStatusError, RateLimitedError, TransportError

USER_AGENT = "book-ingest/1.0 (+library ingestion)"
RETRYABLE_STATUSES = (500, 502, 503, 504)
logger = logging.getLogger(__name__)


def _safe_body_preview(resp: requests.Response, limit: int = 800) -> str:
    try:
        if "application/json" in (resp.headers.get("Content-Type") or "").lower():
            try:
                text = json.dumps(resp.json(), ensure_ascii=False)
            except ValueError:
                text = resp.text or ""
        else:
            text = resp.text or ""
    except Exception:
        return "<unavailable>"
    text = text.replace("\r", " ").replace("\n", " ").strip()
    if len(text) > limit:
        return text[:limit].rstrip() + "..."
    return text


def make_session(user_agent: str = USER_AGENT, accept: str = "application/json") -> requests.Session:
    s = requests.Session()
    s.headers.update({
        "Accept": accept,
        "User-Agent": user_agent,
    })
    return s


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def check_response(resp: requests.Response, url: str) -> None:
    """
    Classify a provider response:
      - 429            -> RateLimitedError (carries Retry-After)
      - 5xx            -> TransportError (retryable)
      - other 4xx      -> HttpStatusError (not retryable)
    """
    code = resp.status_code
    if code == 429:
        ra = parse_retry_after(resp.headers.get("Retry-After"))
        logger.warning("rate limited | status=429 | url=%s | retry_after=%s", url, ra)
        raise RateLimitedError(f"429 Too Many Requests: {url}", retry_after_s=ra)
    if code in RETRYABLE_STATUSES or code >= 500:
        logger.warning("server error | status=%s | url=%s", code, url)
        raise TransportError(f"{code} from {url}", status_code=code)
    if code >= 400:
        logger.error("http error | status=%s | url=%s | body=%s", code, url, _safe_body_preview(resp))
        raise HttpStatusError(f"{code} from {url}", status_code=code)


def http_get(
    session: requests.Session,
    url: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    timeout_s: float = 30,
    stream: bool = False,
) -> requests.Response:
    logger.debug("request | method=GET | url=%s | params=%s | stream=%s", url, params, stream)
    try:
        resp = session.get(url, params=params, timeout=timeout_s, stream=stream)
    except requests.RequestException as e:
        raise TransportError(f"Request failed: {url} error={e}") from e
    try:
        check_response(resp, url)
    except Exception:
        resp.close()
        raise
    return resp


def get_json(
    session: requests.Session,
    url: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    timeout_s: float = 30,
) -> Any:
    resp = http_get(session, url, params=params, timeout_s=timeout_s)
    try:
        return resp.json() if resp.content else {}
    except ValueError as e:
        # truncated or HTML error pages from flaky upstreams
        raise TransportError(f"Invalid JSON from {url}: {e}") from e


def get_text(
    session: requests.Session,
    url: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    timeout_s: float = 30,
) -> str:
    resp = http_get(session, url, params=params, timeout_s=timeout_s)
    return resp.text or ""

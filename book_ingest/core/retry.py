from __future__ import annotations

import logging
import random
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from .errors import PersistenceError, RateLimitedError, TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RATE_LIMIT_MS = 1500


@dataclass(frozen=True)
class RetryPolicy:
    """
    One retry policy for every external call in a job.

    - TransportError: up to `max_attempts` tries, exponential backoff + jitter
    - RateLimitedError: wait Retry-After (or `rate_limit_fallback_s`), then exactly one more try
    - sqlite3.OperationalError: up to `persistence_attempts` tries, short fixed delay,
      then PersistenceError
    - anything else propagates untouched (invalid content is never retried)
    """

    max_attempts: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    jitter_s: float = 0.5
    rate_limit_fallback_s: float = 5.0
    persistence_attempts: int = 3
    persistence_delay_s: float = 0.2
    sleep: Callable[[float], None] = time.sleep

    def backoff_for(self, attempt: int) -> float:
        base = min(self.max_delay_s, self.base_delay_s * (2 ** max(0, attempt - 1)))
        return base + random.random() * self.jitter_s

    def call(self, fn: Callable[..., T], *args, label: str = "call", **kwargs) -> T:
        attempt = 0
        rate_limited_once = False
        db_attempt = 0
        while True:
            attempt += 1
            try:
                return fn(*args, **kwargs)
            except RateLimitedError as e:
                if rate_limited_once:
                    logger.warning("rate limited again, giving up | op=%s | err=%s", label, e)
                    raise
                rate_limited_once = True
                wait = e.retry_after_s if e.retry_after_s is not None else self.rate_limit_fallback_s
                logger.warning("rate limited | op=%s | retry_after=%ss", label, wait)
                self.sleep(max(0.0, float(wait)))
            except TransportError as e:
                if attempt >= max(1, self.max_attempts):
                    logger.warning("transport retries exhausted | op=%s | attempts=%s | err=%s", label, attempt, e)
                    raise
                delay = self.backoff_for(attempt)
                logger.warning(
                    "transport error | op=%s | attempt=%s/%s | backoff=%.2fs | err=%s",
                    label,
                    attempt,
                    self.max_attempts,
                    delay,
                    e,
                )
                self.sleep(delay)
            except sqlite3.OperationalError as e:
                db_attempt += 1
                if db_attempt >= max(1, self.persistence_attempts):
                    logger.error("persistence retries exhausted | op=%s | attempts=%s | err=%r", label, db_attempt, e)
                    raise PersistenceError(f"{label}: {e}") from e
                logger.warning("persistence error | op=%s | attempt=%s | err=%r (retrying)", label, db_attempt, e)
                self.sleep(self.persistence_delay_s)


class IntervalLimiter:
    """Minimum spacing between calls to one provider. A slot is reserved before sleeping."""

    def __init__(
        self,
        min_interval_ms: Optional[int],
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if min_interval_ms is None:
            min_interval_ms = DEFAULT_RATE_LIMIT_MS
        self.interval_s = max(0, int(min_interval_ms)) / 1000.0
        self._clock = clock
        self._sleep = sleep
        self._next_at: Optional[float] = None
        self._lock = threading.Lock()

    def take(self) -> float:
        """Block until the next call is allowed; returns seconds waited."""
        with self._lock:
            now = self._clock()
            start = now if self._next_at is None else max(now, self._next_at)
            self._next_at = start + self.interval_s
            wait = start - now
        if wait > 0:
            self._sleep(wait)
        return wait

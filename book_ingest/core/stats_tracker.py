from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Dict, Iterable, Optional

from .models import FAILED, HEALTHY, STATUS_FAILED, WARNING, SourceRunResult, SourceStats
from .store import CatalogStore

logger = logging.getLogger(__name__)

STALE_AFTER_S = 48 * 3600
ERROR_WINDOW_S = 24 * 3600
MAX_ERRORS_24H = 5

_SEVERITY = {HEALTHY: 0, WARNING: 1, FAILED: 2}


def derive_health(
    last_run_status: Optional[str],
    last_run_at: Optional[float],
    error_count_24h: int,
    now: Optional[float] = None,
) -> str:
    """
    Health is derived at read time, never stored.

    failed  -> last run failed
    warning -> never run, no run within 48h, or more than 5 errors in 24h
    healthy -> otherwise
    """
    if last_run_status == STATUS_FAILED:
        return FAILED
    now = time.time() if now is None else now
    if last_run_at is None or now - float(last_run_at) > STALE_AFTER_S:
        return WARNING
    if int(error_count_24h or 0) > MAX_ERRORS_24H:
        return WARNING
    return HEALTHY


def worst_health(statuses: Iterable[str]) -> str:
    worst = HEALTHY
    for s in statuses:
        if _SEVERITY.get(s, 0) > _SEVERITY[worst]:
            worst = s
    return worst


class StatsTracker:
    """Cumulative per-source statistics backed by the catalog store."""

    def __init__(self, store: CatalogStore, *, clock=time.time) -> None:
        self.store = store
        self._clock = clock

    def record_source_run(self, result: SourceRunResult) -> SourceStats:
        now = result.finished_at or self._clock()
        prev = self.store.get_stats(result.source_id)

        total_ingested = prev.total_ingested + result.processed
        # running mean weighted by item count
        if total_ingested > 0 and result.processed > 0:
            per_item = result.processing_ms / result.processed
            avg = ((prev.avg_processing_ms * prev.total_ingested) + per_item * result.processed) / total_ingested
        else:
            avg = prev.avg_processing_ms

        status = result.status
        stats = replace(
            prev,
            total_ingested=total_ingested,
            total_succeeded=prev.total_succeeded + result.added,
            total_failed=prev.total_failed + result.failed,
            last_run_at=now,
            last_run_status=status,
            last_success_at=now if status != STATUS_FAILED else prev.last_success_at,
            error_count_24h=self.store.errors_since(result.source_id, now - ERROR_WINDOW_S),
            avg_processing_ms=round(avg, 3),
        )
        self.store.save_stats(stats)
        logger.info(
            "stats | source=%s | status=%s | ingested=%s | succeeded=%s | failed=%s | errors_24h=%s",
            stats.source_id,
            status,
            stats.total_ingested,
            stats.total_succeeded,
            stats.total_failed,
            stats.error_count_24h,
        )
        return stats

    def source_health(self, source_id: str, now: Optional[float] = None) -> str:
        s = self.store.get_stats(source_id)
        return derive_health(s.last_run_status, s.last_run_at, s.error_count_24h, now=now)

    def health_report(self, source_ids: Iterable[str], now: Optional[float] = None) -> Dict[str, dict]:
        report: Dict[str, dict] = {}
        for sid in source_ids:
            s = self.store.get_stats(sid)
            report[sid] = {
                "status": derive_health(s.last_run_status, s.last_run_at, s.error_count_24h, now=now),
                "last_run_at": s.last_run_at,
                "last_success_at": s.last_success_at,
                "last_run_status": s.last_run_status,
                "total_ingested": s.total_ingested,
                "total_succeeded": s.total_succeeded,
                "total_failed": s.total_failed,
                "error_count_24h": s.error_count_24h,
                "avg_processing_ms": s.avg_processing_ms,
            }
        return report

    def overall_health(self, source_ids: Iterable[str], now: Optional[float] = None) -> str:
        return worst_health(self.source_health(sid, now=now) for sid in source_ids)


class JobCounters:
    """
    Thread-safe live counters for progress logging during a job.

    Rule: All mutation is done under one lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_ts = time.time()
        self._processed = 0
        self._added = 0
        self._skipped = 0
        self._failed = 0

    def inc(self, *, added: int = 0, skipped: int = 0, failed: int = 0) -> None:
        with self._lock:
            self._added += int(added)
            self._skipped += int(skipped)
            self._failed += int(failed)
            self._processed += int(added) + int(skipped) + int(failed)

    def snapshot_dict(self) -> dict:
        with self._lock:
            elapsed = max(0.0001, time.time() - self._start_ts)
            return {
                "processed": self._processed,
                "added": self._added,
                "skipped": self._skipped,
                "failed": self._failed,
                "seconds": round(elapsed, 2),
                "items_per_sec": round(self._processed / elapsed, 3),
            }

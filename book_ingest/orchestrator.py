from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional, Set, Tuple

from book_ingest.assets.validator import ContentValidator, content_type_for, storage_path
from book_ingest.assets.writer import AssetWriter
from book_ingest.core.dedup import DedupEngine
from book_ingest.core.errors import (
    AssetExistsError,
    DuplicateRecordError,
    IngestError,
    JobNotResumableError,
)
from book_ingest.core.filters import FilterEngine
from book_ingest.core.models import (
    EMPTY_CLASSIFICATION,
    CanonicalBook,
    Classification,
    CanonicalFields,
    FetchOptions,
    FilterDecision,
    JobCursor,
    JobResult,
    RawItem,
    SourceConfig,
    SourceMetadata,
    SourceRunResult,
)
from book_ingest.core.normalize import normalize
from book_ingest.core.retry import IntervalLimiter, RetryPolicy
from book_ingest.core.stats_tracker import JobCounters, StatsTracker
from book_ingest.core.store import CatalogStore
from book_ingest.fetchers.base import Fetcher
from book_ingest.fetchers.registry import SourceRegistry
from book_ingest.integrations.classifier import GenreClassifier
from book_ingest.integrations.covers import CoverSearch

logger = logging.getLogger(__name__)

STATE_PAUSED = "paused"
STATE_STOPPED = "stopped"
STATE_RESUMED = "resumed"

ADDED = "added"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass(frozen=True)
class RunOptions:
    batch_size: Optional[int] = None  # None -> each source's configured batch_size
    dry_run: bool = False
    page: int = 1
    sources: Optional[Tuple[str, ...]] = None
    language: Optional[str] = None
    trigger: str = "manual"
    source_concurrency: int = 1


class JobControl:
    """
    Cooperative pause/stop. Checked between items only.

    In-process requests (request_pause/request_stop) and marker files are equivalent;
    stop wins over pause.
    """

    def __init__(self, *, stop_file: Optional[str] = None, pause_file: Optional[str] = None) -> None:
        self.stop_file = stop_file
        self.pause_file = pause_file
        self._stop = threading.Event()
        self._pause = threading.Event()

    def request_pause(self) -> None:
        self._pause.set()

    def request_stop(self) -> None:
        self._stop.set()

    def reset(self) -> None:
        self._stop.clear()
        self._pause.clear()

    def check(self) -> Optional[str]:
        if self._stop.is_set() or (self.stop_file and os.path.exists(self.stop_file)):
            return STATE_STOPPED
        if self._pause.is_set() or (self.pause_file and os.path.exists(self.pause_file)):
            return STATE_PAUSED
        return None


@dataclass
class _PlanEntry:
    fetcher: Fetcher
    config: SourceConfig
    page: int
    offset: int
    batch_size: int


@dataclass
class _SourceOutcome:
    entry: _PlanEntry
    result: Optional[SourceRunResult]
    interrupted: Optional[str] = None
    next_offset: int = 0


class Orchestrator:
    """
    Runs ingestion jobs: every enabled source, in priority order, through
    fetch -> dedup -> classify -> filter -> validate -> cover -> upload -> insert.

    A failing item or source never aborts the job. Dry runs touch nothing persistent.
    """

    def __init__(
        self,
        *,
        registry: SourceRegistry,
        store: CatalogStore,
        dedup: DedupEngine,
        classifier: Optional[GenreClassifier],
        filters: FilterEngine,
        validator: ContentValidator,
        writer: AssetWriter,
        covers: Optional[CoverSearch] = None,
        retry: Optional[RetryPolicy] = None,
        control: Optional[JobControl] = None,
        stats: Optional[StatsTracker] = None,
        limiter_factory: Callable[[int], IntervalLimiter] = IntervalLimiter,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.store = store
        self.dedup = dedup
        self.classifier = classifier
        self.filters = filters
        self.validator = validator
        self.writer = writer
        self.covers = covers
        self.retry = retry or RetryPolicy()
        self.control = control or JobControl()
        self.stats = stats or StatsTracker(store)
        self.limiter_factory = limiter_factory
        self.clock = clock

    # -----------------------------
    # Public API
    # -----------------------------
    def run(self, options: Optional[RunOptions] = None) -> JobResult:
        options = options or RunOptions()
        self.registry.load_configurations(persist=not options.dry_run)
        wanted = set(options.sources) if options.sources else None
        plan: List[_PlanEntry] = []
        for fetcher, cfg in self.registry.enabled_fetchers():
            if wanted is not None and cfg.source_id not in wanted:
                continue
            plan.append(
                _PlanEntry(
                    fetcher=fetcher,
                    config=cfg,
                    page=max(1, int(options.page)),
                    offset=0,
                    batch_size=int(options.batch_size or cfg.batch_size),
                )
            )
        if wanted:
            planned = {e.config.source_id for e in plan}
            for sid in sorted(wanted - planned):
                logger.warning("requested source not enabled or not registered | source=%s", sid)
        return self._execute(uuid.uuid4().hex, plan, options, resumed_from=None)

    def resume(self, job_id: str, *, source_concurrency: int = 1) -> JobResult:
        cursor = self.store.get_cursor(job_id)
        if cursor is None:
            raise JobNotResumableError(f"No saved position for job {job_id}")
        if cursor.state != STATE_PAUSED:
            raise JobNotResumableError(f"Job {job_id} is {cursor.state} and cannot be resumed")

        self.registry.load_configurations(persist=True)
        plan: List[_PlanEntry] = []
        for i, sid in enumerate((cursor.source_id, *cursor.remaining_sources)):
            fetcher = self.registry.get_fetcher(sid)
            cfg = self.registry.get_configuration(sid)
            if fetcher is None or cfg is None or not cfg.enabled:
                logger.warning("skipping source on resume (unregistered or disabled) | source=%s", sid)
                continue
            plan.append(
                _PlanEntry(
                    fetcher=fetcher,
                    config=cfg,
                    page=cursor.page,
                    offset=cursor.offset if i == 0 else 0,
                    batch_size=cursor.batch_size,
                )
            )
        self.store.set_cursor_state(job_id, STATE_RESUMED)
        logger.info(
            "resuming job | job=%s | source=%s | page=%s | offset=%s | remaining=%s",
            job_id,
            cursor.source_id,
            cursor.page,
            cursor.offset,
            ",".join(cursor.remaining_sources) or "-",
        )
        options = RunOptions(
            batch_size=cursor.batch_size,
            page=cursor.page,
            language=cursor.language,
            trigger="resume",
            source_concurrency=source_concurrency,
        )
        return self._execute(uuid.uuid4().hex, plan, options, resumed_from=job_id)

    # -----------------------------
    # Job
    # -----------------------------
    def _execute(
        self,
        job_id: str,
        plan: List[_PlanEntry],
        options: RunOptions,
        *,
        resumed_from: Optional[str],
    ) -> JobResult:
        job = JobResult(
            job_id=job_id,
            trigger=options.trigger,
            dry_run=options.dry_run,
            started_at=self.clock(),
            resumed_from=resumed_from,
        )
        counters = JobCounters()
        logger.info(
            "job start | job=%s | trigger=%s | dry_run=%s | sources=%s",
            job_id,
            options.trigger,
            options.dry_run,
            ",".join(e.config.source_id for e in plan) or "-",
        )

        outcomes = self._run_plan(job_id, plan, options, counters)
        job.sources = [o.result for o in outcomes if o.result is not None]

        interrupted = [o for o in outcomes if o.interrupted]
        cursor: Optional[JobCursor] = None
        if interrupted:
            state = STATE_STOPPED if any(o.interrupted == STATE_STOPPED for o in interrupted) else STATE_PAUSED
            job.interrupted = state
            first = interrupted[0]
            rest = [o.entry.config.source_id for o in interrupted[1:]]
            cursor = JobCursor(
                job_id=job_id,
                source_id=first.entry.config.source_id,
                page=first.entry.page,
                offset=first.next_offset,
                batch_size=first.entry.batch_size,
                remaining_sources=tuple(rest),
                state=state,
                language=options.language,
            )
            # the flag has been honoured; a marker file stays until the operator removes it
            self.control.reset()
        job.finished_at = self.clock()

        if not options.dry_run:
            if cursor is not None:
                self._save_quietly(job_id, "save_cursor", self.store.save_cursor, cursor)
            self._save_quietly(job_id, "save_job", self.store.save_job_result, job)
            for sr in job.sources:
                self._save_quietly(job_id, "record_stats", self.stats.record_source_run, sr)

        logger.info(
            "job done | job=%s | status=%s | processed=%s | added=%s | skipped=%s | failed=%s | interrupted=%s | items_per_sec=%s",
            job_id,
            job.status,
            job.processed,
            job.added,
            job.skipped,
            job.failed,
            job.interrupted or "-",
            counters.snapshot_dict()["items_per_sec"],
        )
        return job

    def _save_quietly(self, job_id: str, label: str, fn, *args) -> None:
        """Job bookkeeping writes; a failure is logged and the job result is still returned."""
        try:
            self.retry.call(fn, *args, label=label)
        except IngestError as e:
            logger.error("job bookkeeping failed | job=%s | step=%s | err=%s", job_id, label, e)

    def _run_plan(
        self,
        job_id: str,
        plan: List[_PlanEntry],
        options: RunOptions,
        counters: JobCounters,
    ) -> List[_SourceOutcome]:
        workers = max(1, int(options.source_concurrency or 1))
        if workers == 1 or len(plan) <= 1:
            outcomes: List[_SourceOutcome] = []
            for i, entry in enumerate(plan):
                out = self._run_source(job_id, entry, options, counters)
                outcomes.append(out)
                if out.interrupted:
                    # sources not yet started ride along in the cursor
                    outcomes.extend(
                        _SourceOutcome(entry=e, result=None, interrupted=out.interrupted, next_offset=0)
                        for e in plan[i + 1 :]
                    )
                    break
            return outcomes

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="source") as pool:
            futures = [pool.submit(self._run_source, job_id, e, options, counters) for e in plan]
            return [f.result() for f in futures]

    # -----------------------------
    # Source
    # -----------------------------
    def _run_source(
        self,
        job_id: str,
        entry: _PlanEntry,
        options: RunOptions,
        counters: JobCounters,
    ) -> _SourceOutcome:
        sid = entry.config.source_id
        state = self.control.check()
        if state:
            return _SourceOutcome(entry=entry, result=None, interrupted=state, next_offset=entry.offset)

        sr = SourceRunResult(source_id=sid, started_at=self.clock())
        limiter = self.limiter_factory(entry.config.rate_limit_ms)
        fetcher = entry.fetcher
        meta = fetcher.metadata()
        fetch_opts = FetchOptions(batch_size=entry.batch_size, page=entry.page, language=options.language)

        def _fetch() -> List[RawItem]:
            limiter.take()
            return fetcher.fetch_items(fetch_opts)

        try:
            items = self.retry.call(_fetch, label=f"fetch:{sid}")
            batch = items[entry.offset :]
            known = self.retry.call(self.dedup.known_identifiers, sid, batch, label=f"dedup:{sid}")
        except IngestError as e:
            return self._source_failed(entry, sr, e)
        except Exception as e:
            logger.exception("fetcher raised unexpectedly | source=%s", sid)
            return self._source_failed(entry, sr, e)

        seen: Set[str] = set()
        for idx in range(entry.offset, len(items)):
            state = self.control.check()
            if state:
                sr.finished_at = self.clock()
                logger.info("source interrupted | source=%s | state=%s | next_offset=%s", sid, state, idx)
                self._log_progress(sr)
                return _SourceOutcome(entry=entry, result=sr, interrupted=state, next_offset=idx)

            raw = items[idx]
            t0 = time.perf_counter()
            try:
                outcome, stage, message = self._process_item(job_id, fetcher, meta, raw, limiter, known, seen, options)
            except Exception as e:
                logger.exception("item crashed | source=%s | item=%s", sid, raw.identifier)
                outcome, stage, message = FAILED, "internal", repr(e)
            sr.processing_ms += (time.perf_counter() - t0) * 1000.0
            sr.processed += 1
            if outcome == ADDED:
                sr.added += 1
                counters.inc(added=1)
            elif outcome == SKIPPED:
                sr.skipped += 1
                counters.inc(skipped=1)
            else:
                sr.failed += 1
                counters.inc(failed=1)
                sr.record_error(raw.identifier, stage or "unknown", message or "", self.clock())
                logger.warning(
                    "item failed | source=%s | item=%s | stage=%s | err=%s",
                    sid,
                    raw.identifier,
                    stage,
                    message,
                )

        sr.finished_at = self.clock()
        self._log_progress(sr)
        return _SourceOutcome(entry=entry, result=sr)

    def _source_failed(self, entry: _PlanEntry, sr: SourceRunResult, err: Exception) -> _SourceOutcome:
        sr.fetch_error = str(err) or type(err).__name__
        sr.record_error("*", "fetch", sr.fetch_error, self.clock())
        sr.finished_at = self.clock()
        logger.error("source fetch failed | source=%s | page=%s | err=%s", sr.source_id, entry.page, err)
        return _SourceOutcome(entry=entry, result=sr)

    def _log_progress(self, sr: SourceRunResult) -> None:
        logger.info(
            "source done | source=%s | status=%s | processed=%s | added=%s | skipped=%s | failed=%s",
            sr.source_id,
            sr.status,
            sr.processed,
            sr.added,
            sr.skipped,
            sr.failed,
        )

    # -----------------------------
    # Item
    # -----------------------------
    def _classify(self, fields: CanonicalFields) -> Classification:
        if self.classifier is None:
            return EMPTY_CLASSIFICATION
        try:
            return self.classifier.classify(fields) or EMPTY_CLASSIFICATION
        except Exception as e:
            logger.warning("classifier raised | item=%s | err=%r", fields.source_identifier, e)
            return EMPTY_CLASSIFICATION

    def _asset_location(
        self,
        fetcher: Fetcher,
        meta: SourceMetadata,
        raw: RawItem,
        limiter: IntervalLimiter,
    ) -> Tuple[Optional[str], str]:
        if raw.download_url:
            fmt = raw.formats[0] if raw.formats else (meta.supported_formats or ("pdf",))[0]
            return raw.download_url, fmt
        remote = bool(getattr(fetcher, "RESOLVE_IS_REMOTE", False))
        for fmt in meta.supported_formats or ("pdf",):

            def _resolve(fmt: str = fmt) -> Optional[str]:
                if remote:
                    limiter.take()
                return fetcher.resolve_asset_url(raw.identifier, fmt)

            url = self.retry.call(_resolve, label="resolve")
            if url:
                return url, fmt
        return None, (meta.supported_formats or ("pdf",))[0]

    def _process_item(
        self,
        job_id: str,
        fetcher: Fetcher,
        meta: SourceMetadata,
        raw: RawItem,
        limiter: IntervalLimiter,
        known: Set[str],
        seen: Set[str],
        options: RunOptions,
    ) -> Tuple[str, Optional[str], Optional[str]]:
        """Returns (outcome, failed stage, message)."""
        sid = fetcher.source_id()
        fields = normalize(raw, sid)
        item_id = fields.source_identifier
        if not item_id:
            return FAILED, "map", "item has no identifier"
        if item_id in known or item_id in seen:
            return SKIPPED, None, None
        seen.add(item_id)

        cls = self._classify(fields)

        verdict = self.filters.evaluate(cls.genres, fields.author)
        if not verdict.passed:
            logger.debug(
                "item filtered | source=%s | item=%s | filter=%s | value=%s",
                sid,
                item_id,
                verdict.filter_name,
                verdict.value,
            )
            if not options.dry_run:
                decision = FilterDecision(
                    job_id=job_id,
                    source=sid,
                    item_id=item_id,
                    title=fields.title,
                    author=fields.author,
                    genres=cls.genres,
                    filter_name=verdict.filter_name or "",
                    reason=verdict.reason or "",
                    value=verdict.value or "",
                    ts=self.clock(),
                )
                try:
                    self.retry.call(self.store.add_filter_decision, decision, label="audit")
                except IngestError as e:
                    return FAILED, "audit", str(e)
            return SKIPPED, None, None

        try:
            url, fmt = self._asset_location(fetcher, meta, raw, limiter)
        except IngestError as e:
            return FAILED, "resolve", str(e)
        if not url:
            return FAILED, "resolve", "no asset url"

        checked = self.validator.validate(url, fmt, limiter=limiter)
        if not checked.valid:
            return FAILED, "validate", checked.reason
        try:
            if options.dry_run:
                return ADDED, None, None
            return self._persist(fields, cls, checked.asset, fmt)
        finally:
            checked.close()

    def _persist(self, fields: CanonicalFields, cls: Classification, asset, fmt: str) -> Tuple[str, Optional[str], Optional[str]]:
        cover_url = fields.cover_url
        if self.covers is not None:
            cover_url = self.covers.search(fields).url

        path = storage_path(fields.source, fields.source_identifier, fmt)

        def _upload() -> str:
            asset.seek(0)
            return self.writer.upload(asset, path, content_type_for(fmt))

        try:
            asset_url = self.retry.call(_upload, label="upload")
        except AssetExistsError as e:
            # occupied path with no catalog record: never overwrite
            logger.warning("asset path occupied | path=%s", e.path)
            return FAILED, "upload", str(e)
        except IngestError as e:
            return FAILED, "upload", str(e)

        book = CanonicalBook(
            title=fields.title,
            author=fields.author,
            year=fields.year,
            language=fields.language,
            description=fields.description,
            source=fields.source,
            source_identifier=fields.source_identifier,
            asset_url=asset_url,
            cover_url=cover_url,
            genres=cls.genres,
            subgenre=cls.subgenre,
            category=cls.category,
        )
        try:
            self.retry.call(self.store.insert_book, book, label="insert")
        except DuplicateRecordError:
            # another job won the race after our dedup check
            self._rollback_asset(path)
            return SKIPPED, None, None
        except IngestError as e:
            logger.error(
                "record insert failed | source=%s | item=%s | asset=%s | err=%s",
                fields.source,
                fields.source_identifier,
                asset_url,
                e,
            )
            self._rollback_asset(path)
            return FAILED, "persist", str(e)
        return ADDED, None, None

    def _rollback_asset(self, path: str) -> None:
        try:
            self.writer.discard(path)
        except Exception as e:
            logger.error("asset rollback failed | path=%s | err=%r", path, e)

# book_ingest/cli.py
from __future__ import annotations

import argparse
import json
import logging
import time
from pathlib import Path
from typing import Any, List, Optional

from book_ingest.assets.validator import ContentValidator
from book_ingest.assets.writer import AssetWriter, LocalAssetWriter, S3AssetWriter
from book_ingest.config import AppConfig, load_dotenv, load_sources_file
from book_ingest.core.dedup import DedupEngine
from book_ingest.core.errors import ConfigError, JobNotResumableError
from book_ingest.core.filters import FilterConfig, FilterEngine
from book_ingest.core.retry import RetryPolicy
from book_ingest.core.stats_tracker import StatsTracker
from book_ingest.core.store import CatalogStore
from book_ingest.fetchers.gutenberg import GutenbergFetcher
from book_ingest.fetchers.internet_archive import InternetArchiveFetcher
from book_ingest.fetchers.pdf_site import PdfSiteFetcher
from book_ingest.fetchers.registry import SourceRegistry
from book_ingest.integrations.classifier import ClassifierConfig, GenreClassifier
from book_ingest.integrations.covers import CoverSearch
from book_ingest.integrations.http_client import make_session
from book_ingest.orchestrator import JobControl, Orchestrator, RunOptions

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

try:
    from rich.logging import RichHandler
except Exception:
    RichHandler = None

logger = logging.getLogger(__name__)


def _split_list(s: Optional[str]) -> Optional[List[str]]:
    parts = [x.strip() for x in (s or "").split(",") if x.strip()]
    return parts or None


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, default=str))


def _setup_logging(level_name: str) -> None:
    level = LOG_LEVELS.get((level_name or "info").lower(), logging.INFO)
    if RichHandler:
        logging.basicConfig(
            level=level,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        )
    else:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


# -----------------------
# Wiring
# -----------------------
def build_writer(cfg: AppConfig) -> AssetWriter:
    if cfg.asset_backend == "s3":
        logger.info(
            "asset backend | backend=s3 | bucket=%s | region=%s | cloudfront=%s",
            cfg.s3_bucket,
            cfg.aws_region,
            cfg.cloudfront_domain or "(none)",
        )
        return S3AssetWriter(cfg.s3_bucket, cfg.aws_region, cfg.cloudfront_domain)
    logger.info("asset backend | backend=local | dir=%s", cfg.asset_dir)
    return LocalAssetWriter(cfg.asset_dir, cfg.asset_base_url)


def build_registry(cfg: AppConfig, store: CatalogStore) -> SourceRegistry:
    registry = SourceRegistry(
        store,
        seeds=load_sources_file(cfg.sources_file),
        default_rate_limit_ms=cfg.default_rate_limit_ms,
        default_batch_size=cfg.batch_size,
    )
    for fetcher_cls in (InternetArchiveFetcher, GutenbergFetcher, PdfSiteFetcher):
        registry.register(fetcher_cls(make_session(), timeout_s=cfg.timeout_s))
    return registry


def build_orchestrator(cfg: AppConfig, store: CatalogStore, registry: SourceRegistry) -> Orchestrator:
    retry = RetryPolicy(max_attempts=cfg.retries)
    classifier_cfg = ClassifierConfig.from_env()
    if not classifier_cfg.active:
        logger.info("genre classification inactive (disabled or no OPENROUTER_API_KEY)")
    filters = FilterEngine(FilterConfig.from_env())
    logger.info("filters | %s", filters.summary())
    covers = None
    if cfg.cover_search:
        covers = CoverSearch(make_session(), timeout_s=cfg.timeout_s, notify=store.add_notification)
    return Orchestrator(
        registry=registry,
        store=store,
        dedup=DedupEngine(store),
        classifier=GenreClassifier(classifier_cfg),
        filters=filters,
        validator=ContentValidator(
            make_session(accept="*/*"),
            retry=retry,
            timeout_s=cfg.timeout_s,
            max_bytes=cfg.max_asset_bytes,
        ),
        writer=build_writer(cfg),
        covers=covers,
        retry=retry,
        control=JobControl(stop_file=cfg.stop_file, pause_file=cfg.pause_file),
        stats=StatsTracker(store),
    )


# -----------------------
# Commands
# -----------------------
def _run_options(args: argparse.Namespace, trigger: str) -> RunOptions:
    sources = _split_list(args.source)
    return RunOptions(
        batch_size=args.batch_size,
        dry_run=args.dry_run,
        page=args.page,
        sources=tuple(sources) if sources else None,
        language=args.language,
        trigger=trigger,
        source_concurrency=args.source_concurrency,
    )


def cmd_run(cfg: AppConfig, args: argparse.Namespace) -> None:
    store = CatalogStore(cfg.db_path)
    orch = build_orchestrator(cfg, store, build_registry(cfg, store))
    result = orch.run(_run_options(args, "manual"))
    _print_json(result.to_dict())


def cmd_schedule(cfg: AppConfig, args: argparse.Namespace) -> None:
    if args.every < 1:
        raise SystemExit("--every must be >= 1 second.")
    store = CatalogStore(cfg.db_path)
    orch = build_orchestrator(cfg, store, build_registry(cfg, store))
    runs = 0
    logger.info("scheduler start | every=%ss | max_runs=%s", args.every, args.max_runs or "unlimited")
    while True:
        result = orch.run(_run_options(args, "scheduled"))
        _print_json(result.to_dict())
        runs += 1
        if args.max_runs and runs >= args.max_runs:
            break
        if result.interrupted == "stopped" or orch.control.check() == "stopped":
            logger.info("scheduler stopping | reason=stop requested")
            break
        time.sleep(args.every)


def cmd_resume(cfg: AppConfig, args: argparse.Namespace) -> None:
    store = CatalogStore(cfg.db_path)
    job_id = args.job_id or store.latest_paused_job()
    if not job_id:
        raise SystemExit("No paused job to resume.")
    if cfg.pause_file:
        Path(cfg.pause_file).unlink(missing_ok=True)
    orch = build_orchestrator(cfg, store, build_registry(cfg, store))
    try:
        result = orch.resume(job_id, source_concurrency=args.source_concurrency)
    except JobNotResumableError as e:
        raise SystemExit(str(e)) from e
    _print_json(result.to_dict())


def cmd_pause(cfg: AppConfig, args: argparse.Namespace) -> None:
    if not cfg.pause_file:
        raise SystemExit("INGEST_PAUSE_FILE is empty; nothing to signal with.")
    Path(cfg.pause_file).touch()
    logger.info("pause requested | marker=%s", cfg.pause_file)


def cmd_stop(cfg: AppConfig, args: argparse.Namespace) -> None:
    if not cfg.stop_file:
        raise SystemExit("INGEST_STOP_FILE is empty; nothing to signal with.")
    Path(cfg.stop_file).touch()
    logger.info("stop requested | marker=%s", cfg.stop_file)


def _parse_setting(raw: str) -> tuple:
    if "=" not in raw:
        raise SystemExit(f"--setting expects key=value (got {raw!r})")
    k, v = raw.split("=", 1)
    return k.strip(), v.strip()


def cmd_sources(cfg: AppConfig, args: argparse.Namespace) -> None:
    store = CatalogStore(cfg.db_path)
    registry = build_registry(cfg, store)
    configs = registry.load_configurations(persist=True)

    if args.action == "list":
        rows = []
        for sid, c in sorted(configs.items(), key=lambda kv: (kv[1].priority, kv[0])):
            rows.append({
                "source_id": sid,
                "display_name": c.display_name,
                "enabled": c.enabled,
                "priority": c.priority,
                "rate_limit_ms": c.rate_limit_ms,
                "batch_size": c.batch_size,
                "settings": c.settings,
                "registered": registry.get_fetcher(sid) is not None,
            })
        _print_json({"sources": rows, "registration_errors": registry.registration_errors()})
        return

    if not args.source_id:
        raise SystemExit(f"sources {args.action} needs a source id")
    changes: dict = {}
    if args.action == "enable":
        changes["enabled"] = True
    elif args.action == "disable":
        changes["enabled"] = False
    else:
        if args.priority is not None:
            changes["priority"] = args.priority
        if args.rate_limit_ms is not None:
            changes["rate_limit_ms"] = args.rate_limit_ms
        if args.batch_size is not None:
            changes["batch_size"] = args.batch_size
        if args.setting:
            current = registry.get_configuration(args.source_id)
            settings = dict(current.settings) if current else {}
            settings.update(_parse_setting(s) for s in args.setting)
            changes["settings"] = settings
        if not changes:
            raise SystemExit("sources set: nothing to change")
    try:
        updated = registry.update_configuration(args.source_id, **changes)
    except ConfigError as e:
        raise SystemExit(str(e)) from e
    _print_json({
        "source_id": updated.source_id,
        "enabled": updated.enabled,
        "priority": updated.priority,
        "rate_limit_ms": updated.rate_limit_ms,
        "batch_size": updated.batch_size,
        "settings": updated.settings,
    })


def cmd_health(cfg: AppConfig, args: argparse.Namespace) -> None:
    store = CatalogStore(cfg.db_path)
    registry = build_registry(cfg, store)
    configs = registry.load_configurations(persist=False)
    ids = sorted(sid for sid, c in configs.items() if c.enabled)
    tracker = StatsTracker(store)
    _print_json({
        "overall": tracker.overall_health(ids),
        "sources": tracker.health_report(ids),
    })


def cmd_jobs(cfg: AppConfig, args: argparse.Namespace) -> None:
    store = CatalogStore(cfg.db_path)
    if args.job_id:
        job = store.get_job(args.job_id)
        if job is None:
            raise SystemExit(f"Unknown job: {args.job_id}")
        _print_json(job)
        return
    jobs = store.recent_jobs(args.limit)
    for j in jobs:
        j.pop("sources", None)
    _print_json(jobs)


def cmd_filter_stats(cfg: AppConfig, args: argparse.Namespace) -> None:
    store = CatalogStore(cfg.db_path)
    filters = FilterEngine(FilterConfig.from_env())
    _print_json({
        "active": filters.has_active_filters(),
        "summary": filters.summary(),
        "unknown_genres": filters.validate_genre_names(filters.config.allowed_genres),
        "rejections": store.filter_decision_counts(args.job_id),
    })


def cmd_notifications(cfg: AppConfig, args: argparse.Namespace) -> None:
    store = CatalogStore(cfg.db_path)
    _print_json([
        {"name": n.name, "subject": n.subject, "message": n.message, "ts": n.ts}
        for n in store.recent_notifications(args.limit)
    ])


def _add_run_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--batch-size", type=int, default=None, help="Items per source (default: each source's batch_size)")
    p.add_argument("--dry-run", action="store_true", help="Fetch, classify, filter and validate; write nothing")
    p.add_argument("--source", default=None, help="Comma list of source ids to run (default: all enabled)")
    p.add_argument("--page", type=int, default=1, help="Provider page to fetch")
    p.add_argument("--language", default=None, help="Provider language filter (e.g. eng, en)")
    p.add_argument("--source-concurrency", type=int, default=1, help="Sources processed in parallel")


def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(
        prog="book-ingest",
        description="Multi-source public-domain book ingestion pipeline",
    )
    ap.add_argument("--env", default=".env", help="Path to a .env file")
    ap.add_argument("--log-level", default="info", help="Log level: debug, info, warning, error")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("run", help="Run one ingestion job")
    _add_run_args(p)
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("schedule", help="Run ingestion jobs periodically")
    _add_run_args(p)
    p.add_argument("--every", type=int, required=True, help="Seconds between job starts")
    p.add_argument("--max-runs", type=int, default=0, help="Stop after N jobs (0 = no limit)")
    p.set_defaults(func=cmd_schedule)

    p = sub.add_parser("resume", help="Resume a paused job")
    p.add_argument("job_id", nargs="?", default=None, help="Job id (default: most recently paused)")
    p.add_argument("--source-concurrency", type=int, default=1)
    p.set_defaults(func=cmd_resume)

    p = sub.add_parser("pause", help="Ask running jobs to pause after the current item")
    p.set_defaults(func=cmd_pause)

    p = sub.add_parser("stop", help="Ask running jobs to stop after the current item")
    p.set_defaults(func=cmd_stop)

    p = sub.add_parser("sources", help="List or change source configuration")
    p.add_argument("action", choices=("list", "enable", "disable", "set"))
    p.add_argument("source_id", nargs="?", default=None)
    p.add_argument("--priority", type=int, default=None)
    p.add_argument("--rate-limit-ms", type=int, default=None)
    p.add_argument("--batch-size", type=int, default=None)
    p.add_argument("--setting", action="append", default=[], help="key=value, repeatable")
    p.set_defaults(func=cmd_sources)

    p = sub.add_parser("health", help="Per-source and overall health")
    p.set_defaults(func=cmd_health)

    p = sub.add_parser("jobs", help="Recent job log")
    p.add_argument("job_id", nargs="?", default=None)
    p.add_argument("--limit", type=int, default=10)
    p.set_defaults(func=cmd_jobs)

    p = sub.add_parser("filter-stats", help="Active filters and rejection counts")
    p.add_argument("--job-id", default=None)
    p.set_defaults(func=cmd_filter_stats)

    p = sub.add_parser("notifications", help="Recent operator notifications")
    p.add_argument("--limit", type=int, default=20)
    p.set_defaults(func=cmd_notifications)

    args = ap.parse_args(argv)
    _setup_logging(args.log_level)

    used = load_dotenv(args.env)
    if used:
        logger.info("loaded .env: %s", used)
    else:
        logger.debug(".env not found via search paths; relying on existing environment variables")

    cfg = AppConfig.from_env()
    cfg.validate()
    args.func(cfg, args)


if __name__ == "__main__":
    main()

from __future__ import annotations

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Set

from .errors import ConfigError, DuplicateRecordError
from .models import (
    CanonicalBook,
    FilterDecision,
    JobCursor,
    JobResult,
    Notification,
    SourceConfig,
    SourceStats,
)

logger = logging.getLogger(__name__)

DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS books (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    author TEXT,
    published_year INTEGER,
    language TEXT,
    description TEXT,
    source TEXT NOT NULL,
    source_identifier TEXT NOT NULL,
    asset_url TEXT NOT NULL,
    cover_url TEXT,
    genres TEXT NOT NULL DEFAULT '[]',
    subgenre TEXT,
    category TEXT NOT NULL,
    created_at REAL NOT NULL,
    UNIQUE (source, source_identifier)
);

CREATE TABLE IF NOT EXISTS source_configurations (
    source_id TEXT PRIMARY KEY,
    display_name TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 0,
    priority INTEGER NOT NULL DEFAULT 100,
    rate_limit_ms INTEGER NOT NULL DEFAULT 1500,
    batch_size INTEGER NOT NULL DEFAULT 30,
    settings TEXT NOT NULL DEFAULT '{}',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS source_statistics (
    source_id TEXT PRIMARY KEY,
    total_ingested INTEGER NOT NULL DEFAULT 0,
    total_succeeded INTEGER NOT NULL DEFAULT 0,
    total_failed INTEGER NOT NULL DEFAULT 0,
    last_run_at REAL,
    last_success_at REAL,
    last_run_status TEXT,
    error_count_24h INTEGER NOT NULL DEFAULT 0,
    avg_processing_ms REAL NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS job_results (
    job_id TEXT PRIMARY KEY,
    trigger TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at REAL NOT NULL,
    finished_at REAL,
    interrupted TEXT,
    resumed_from TEXT,
    processed INTEGER NOT NULL,
    added INTEGER NOT NULL,
    skipped INTEGER NOT NULL,
    failed INTEGER NOT NULL,
    payload TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS job_source_results (
    job_id TEXT NOT NULL,
    source_id TEXT NOT NULL,
    status TEXT NOT NULL,
    finished_at REAL NOT NULL,
    processed INTEGER NOT NULL,
    added INTEGER NOT NULL,
    skipped INTEGER NOT NULL,
    failed INTEGER NOT NULL,
    fetch_failed INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (job_id, source_id)
);

CREATE TABLE IF NOT EXISTS filter_decisions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT,
    source TEXT NOT NULL,
    item_id TEXT NOT NULL,
    title TEXT,
    author TEXT,
    genres TEXT NOT NULL DEFAULT '[]',
    filter_name TEXT NOT NULL,
    reason TEXT NOT NULL,
    value TEXT,
    ts REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS job_cursors (
    job_id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL,
    page INTEGER NOT NULL,
    item_offset INTEGER NOT NULL,
    batch_size INTEGER NOT NULL,
    remaining_sources TEXT NOT NULL DEFAULT '[]',
    language TEXT,
    state TEXT NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    subject TEXT NOT NULL,
    message TEXT NOT NULL,
    ts REAL NOT NULL
);
"""

TABLES = (
    "books",
    "source_configurations",
    "source_statistics",
    "job_results",
    "job_source_results",
    "filter_decisions",
    "job_cursors",
    "notifications",
)


class CatalogStore:
    """
    SQLite-backed relational store for everything the pipeline persists.

    One short-lived connection per operation (WAL mode), so concurrent jobs and threads
    never share a connection. The UNIQUE (source, source_identifier) constraint on books
    is the only cross-job exclusion mechanism.
    """

    def __init__(self, path: str) -> None:
        self.path = str(path)
        # every operation opens its own connection, so a private in-memory database would vanish
        if self.path.strip() in ("", ":memory:"):
            raise ConfigError("CatalogStore needs a database file path, not an in-memory database")
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(DB_SCHEMA)
        logger.debug("store ready | path=%s", self.path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=10.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # -----------------------------
    # Books
    # -----------------------------
    def insert_book(self, book: CanonicalBook) -> int:
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    INSERT INTO books (
                        title, author, published_year, language, description, source,
                        source_identifier, asset_url, cover_url, genres, subgenre, category,
                        created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        book.title,
                        book.author,
                        book.year,
                        book.language,
                        book.description,
                        book.source,
                        book.source_identifier,
                        book.asset_url,
                        book.cover_url,
                        json.dumps(list(book.genres)),
                        book.subgenre,
                        book.category,
                        time.time(),
                    ),
                )
                return int(cur.lastrowid)
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError(book.source, book.source_identifier) from e

    def book_exists(self, source: str, source_identifier: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM books WHERE source = ? AND source_identifier = ?",
                (source, source_identifier),
            ).fetchone()
        return row is not None

    def existing_identifiers(self, source: str, identifiers: Iterable[str]) -> Set[str]:
        ids = list(dict.fromkeys(i for i in identifiers if i))
        found: Set[str] = set()
        if not ids:
            return found
        with self._connect() as conn:
            # stay under SQLite's bound-parameter limit
            for start in range(0, len(ids), 500):
                chunk = ids[start : start + 500]
                marks = ",".join("?" for _ in chunk)
                rows = conn.execute(
                    f"SELECT source_identifier FROM books WHERE source = ? AND source_identifier IN ({marks})",
                    [source, *chunk],
                ).fetchall()
                found.update(r["source_identifier"] for r in rows)
        return found

    def get_book(self, source: str, source_identifier: str) -> Optional[dict]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM books WHERE source = ? AND source_identifier = ?",
                (source, source_identifier),
            ).fetchone()
        if row is None:
            return None
        out = dict(row)
        out["genres"] = json.loads(out["genres"] or "[]")
        return out

    def count_books(self, source: Optional[str] = None) -> int:
        with self._connect() as conn:
            if source:
                row = conn.execute("SELECT COUNT(*) FROM books WHERE source = ?", (source,)).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM books").fetchone()
        return int(row[0])

    # -----------------------------
    # Source configuration
    # -----------------------------
    @staticmethod
    def _row_to_config(row: sqlite3.Row) -> SourceConfig:
        return SourceConfig(
            source_id=row["source_id"],
            display_name=row["display_name"],
            enabled=bool(row["enabled"]),
            priority=int(row["priority"]),
            rate_limit_ms=int(row["rate_limit_ms"]),
            batch_size=int(row["batch_size"]),
            settings=json.loads(row["settings"] or "{}"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def get_config(self, source_id: str) -> Optional[SourceConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM source_configurations WHERE source_id = ?", (source_id,)
            ).fetchone()
        return self._row_to_config(row) if row else None

    def all_configs(self) -> Dict[str, SourceConfig]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM source_configurations").fetchall()
        return {r["source_id"]: self._row_to_config(r) for r in rows}

    def insert_config_if_missing(self, cfg: SourceConfig) -> bool:
        now = time.time()
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO source_configurations (
                    source_id, display_name, enabled, priority, rate_limit_ms, batch_size,
                    settings, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    cfg.source_id,
                    cfg.display_name,
                    int(cfg.enabled),
                    cfg.priority,
                    cfg.rate_limit_ms,
                    cfg.batch_size,
                    json.dumps(cfg.settings or {}),
                    cfg.created_at or now,
                    cfg.updated_at or now,
                ),
            )
            return cur.rowcount == 1

    def update_config(self, cfg: SourceConfig) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE source_configurations
                SET display_name = ?, enabled = ?, priority = ?, rate_limit_ms = ?,
                    batch_size = ?, settings = ?, updated_at = ?
                WHERE source_id = ?
                """,
                (
                    cfg.display_name,
                    int(cfg.enabled),
                    cfg.priority,
                    cfg.rate_limit_ms,
                    cfg.batch_size,
                    json.dumps(cfg.settings or {}),
                    time.time(),
                    cfg.source_id,
                ),
            )

    # -----------------------------
    # Source statistics
    # -----------------------------
    def get_stats(self, source_id: str) -> SourceStats:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM source_statistics WHERE source_id = ?", (source_id,)
            ).fetchone()
        if row is None:
            return SourceStats(source_id=source_id)
        return SourceStats(**dict(row))

    def save_stats(self, stats: SourceStats) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO source_statistics (
                    source_id, total_ingested, total_succeeded, total_failed, last_run_at,
                    last_success_at, last_run_status, error_count_24h, avg_processing_ms
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (source_id) DO UPDATE SET
                    total_ingested = excluded.total_ingested,
                    total_succeeded = excluded.total_succeeded,
                    total_failed = excluded.total_failed,
                    last_run_at = excluded.last_run_at,
                    last_success_at = excluded.last_success_at,
                    last_run_status = excluded.last_run_status,
                    error_count_24h = excluded.error_count_24h,
                    avg_processing_ms = excluded.avg_processing_ms
                """,
                (
                    stats.source_id,
                    stats.total_ingested,
                    stats.total_succeeded,
                    stats.total_failed,
                    stats.last_run_at,
                    stats.last_success_at,
                    stats.last_run_status,
                    stats.error_count_24h,
                    stats.avg_processing_ms,
                ),
            )

    # -----------------------------
    # Job log (append-only)
    # -----------------------------
    def save_job_result(self, result: JobResult) -> None:
        payload = result.to_dict()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO job_results (
                    job_id, trigger, status, started_at, finished_at, interrupted,
                    resumed_from, processed, added, skipped, failed, payload
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    result.job_id,
                    result.trigger,
                    result.status,
                    result.started_at,
                    result.finished_at,
                    result.interrupted,
                    result.resumed_from,
                    result.processed,
                    result.added,
                    result.skipped,
                    result.failed,
                    json.dumps(payload, ensure_ascii=False),
                ),
            )
            for s in result.sources:
                conn.execute(
                    """
                    INSERT INTO job_source_results (
                        job_id, source_id, status, finished_at, processed, added, skipped,
                        failed, fetch_failed
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        result.job_id,
                        s.source_id,
                        s.status,
                        s.finished_at or result.finished_at or time.time(),
                        s.processed,
                        s.added,
                        s.skipped,
                        s.failed,
                        1 if s.fetch_error else 0,
                    ),
                )

    def get_job(self, job_id: str) -> Optional[dict]:
        with self._connect() as conn:
            row = conn.execute("SELECT payload FROM job_results WHERE job_id = ?", (job_id,)).fetchone()
        return json.loads(row["payload"]) if row else None

    def recent_jobs(self, limit: int = 10) -> List[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT payload FROM job_results ORDER BY started_at DESC LIMIT ?", (int(limit),)
            ).fetchall()
        return [json.loads(r["payload"]) for r in rows]

    def errors_since(self, source_id: str, since_ts: float) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COALESCE(SUM(failed + fetch_failed), 0)
                FROM job_source_results
                WHERE source_id = ? AND finished_at >= ?
                """,
                (source_id, since_ts),
            ).fetchone()
        return int(row[0])

    # -----------------------------
    # Filter audit trail (write-only for the pipeline)
    # -----------------------------
    def add_filter_decision(self, d: FilterDecision) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO filter_decisions (
                    job_id, source, item_id, title, author, genres, filter_name, reason, value, ts
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    d.job_id,
                    d.source,
                    d.item_id,
                    d.title,
                    d.author,
                    json.dumps(list(d.genres)),
                    d.filter_name,
                    d.reason,
                    d.value,
                    d.ts,
                ),
            )

    def filter_decision_counts(self, job_id: Optional[str] = None) -> Dict[str, int]:
        sql = "SELECT filter_name, COUNT(*) AS n FROM filter_decisions"
        params: list = []
        if job_id:
            sql += " WHERE job_id = ?"
            params.append(job_id)
        sql += " GROUP BY filter_name"
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return {r["filter_name"]: int(r["n"]) for r in rows}

    # -----------------------------
    # Job cursors (pause / resume)
    # -----------------------------
    def save_cursor(self, cursor: JobCursor) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO job_cursors (
                    job_id, source_id, page, item_offset, batch_size, remaining_sources,
                    language, state, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (job_id) DO UPDATE SET
                    source_id = excluded.source_id,
                    page = excluded.page,
                    item_offset = excluded.item_offset,
                    batch_size = excluded.batch_size,
                    remaining_sources = excluded.remaining_sources,
                    language = excluded.language,
                    state = excluded.state,
                    updated_at = excluded.updated_at
                """,
                (
                    cursor.job_id,
                    cursor.source_id,
                    cursor.page,
                    cursor.offset,
                    cursor.batch_size,
                    json.dumps(list(cursor.remaining_sources)),
                    cursor.language,
                    cursor.state,
                    time.time(),
                ),
            )

    def get_cursor(self, job_id: str) -> Optional[JobCursor]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM job_cursors WHERE job_id = ?", (job_id,)).fetchone()
        if row is None:
            return None
        return JobCursor(
            job_id=row["job_id"],
            source_id=row["source_id"],
            page=int(row["page"]),
            offset=int(row["item_offset"]),
            batch_size=int(row["batch_size"]),
            remaining_sources=tuple(json.loads(row["remaining_sources"] or "[]")),
            state=row["state"],
            language=row["language"],
        )

    def set_cursor_state(self, job_id: str, state: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE job_cursors SET state = ?, updated_at = ? WHERE job_id = ?",
                (state, time.time(), job_id),
            )

    def latest_paused_job(self) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT job_id FROM job_cursors WHERE state = 'paused' ORDER BY updated_at DESC LIMIT 1"
            ).fetchone()
        return row["job_id"] if row else None

    # -----------------------------
    # Notifications
    # -----------------------------
    def add_notification(self, n: Notification) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO notifications (name, subject, message, ts) VALUES (?, ?, ?, ?)",
                (n.name, n.subject, n.message, n.ts),
            )

    def recent_notifications(self, limit: int = 20) -> List[Notification]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT name, subject, message, ts FROM notifications ORDER BY ts DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        return [Notification(**dict(r)) for r in rows]

    def table_counts(self) -> Dict[str, int]:
        with self._connect() as conn:
            return {t: int(conn.execute(f"SELECT COUNT(*) FROM {t}").fetchone()[0]) for t in TABLES}

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

STATUS_COMPLETED = "completed"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"

HEALTHY = "healthy"
WARNING = "warning"
FAILED = "failed"

UNCATEGORIZED = "Uncategorized"
MAX_ERRORS_PER_SOURCE = 50


@dataclass(frozen=True)
class RawItem:
    identifier: str
    title: Optional[str]
    creator: Union[str, List[str], None]
    date: Optional[str] = None
    language: Union[str, List[str], None] = None
    description: Union[str, List[str], None] = None
    download_url: Optional[str] = None
    cover_url: Optional[str] = None
    formats: Tuple[str, ...] = ()
    isbn: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class CanonicalFields:
    title: str
    author: Optional[str]
    year: Optional[int]
    language: Optional[str]
    description: Optional[str]
    source: str
    source_identifier: str
    download_url: Optional[str]
    cover_url: Optional[str]
    isbn: Optional[str]


@dataclass(frozen=True)
class Classification:
    genres: Tuple[str, ...]
    subgenre: Optional[str]

    @property
    def category(self) -> str:
        return self.genres[0] if self.genres else UNCATEGORIZED


EMPTY_CLASSIFICATION = Classification(genres=(), subgenre=None)


@dataclass(frozen=True)
class CanonicalBook:
    title: str
    author: Optional[str]
    year: Optional[int]
    language: Optional[str]
    description: Optional[str]
    source: str
    source_identifier: str
    asset_url: str
    cover_url: Optional[str]
    genres: Tuple[str, ...]
    subgenre: Optional[str]
    category: str


@dataclass(frozen=True)
class SourceMetadata:
    display_name: str
    default_rate_limit_ms: int = 1500
    default_batch_size: int = 30
    supported_formats: Tuple[str, ...] = ("pdf",)
    description: str = ""
    website: str = ""


@dataclass(frozen=True)
class FetchOptions:
    batch_size: int = 30
    page: int = 1
    language: Optional[str] = None


@dataclass(frozen=True)
class SourceConfig:
    source_id: str
    display_name: str
    enabled: bool
    priority: int
    rate_limit_ms: int
    batch_size: int
    settings: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    created_at: Optional[float] = None
    updated_at: Optional[float] = None


@dataclass(frozen=True)
class SourceStats:
    source_id: str
    total_ingested: int = 0
    total_succeeded: int = 0
    total_failed: int = 0
    last_run_at: Optional[float] = None
    last_success_at: Optional[float] = None
    last_run_status: Optional[str] = None
    error_count_24h: int = 0
    avg_processing_ms: float = 0.0


@dataclass(frozen=True)
class ItemError:
    item_id: str
    stage: str
    message: str
    ts: float


@dataclass
class SourceRunResult:
    """Mutable accumulator for one source within a job. Frozen into the job log at the end."""

    source_id: str
    started_at: float
    finished_at: Optional[float] = None
    processed: int = 0
    added: int = 0
    skipped: int = 0
    failed: int = 0
    processing_ms: float = 0.0
    fetch_error: Optional[str] = None
    errors: List[ItemError] = field(default_factory=list)
    max_errors: int = MAX_ERRORS_PER_SOURCE

    def record_error(self, item_id: str, stage: str, message: str, ts: float) -> None:
        if len(self.errors) < self.max_errors:
            self.errors.append(ItemError(item_id=item_id, stage=stage, message=message, ts=ts))

    @property
    def status(self) -> str:
        return job_status(self.added + self.skipped, self.failed + (1 if self.fetch_error else 0))

    def to_dict(self) -> dict:
        return {
            "source_id": self.source_id,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "processed": self.processed,
            "added": self.added,
            "skipped": self.skipped,
            "failed": self.failed,
            "processing_ms": round(self.processing_ms, 3),
            "fetch_error": self.fetch_error,
            "errors": [
                {"item_id": e.item_id, "stage": e.stage, "message": e.message, "ts": e.ts}
                for e in self.errors
            ],
        }


def job_status(handled_ok: int, failures: int) -> str:
    if failures <= 0:
        return STATUS_COMPLETED
    if handled_ok > 0:
        return STATUS_PARTIAL
    return STATUS_FAILED


@dataclass
class JobResult:
    job_id: str
    trigger: str
    dry_run: bool
    started_at: float
    finished_at: Optional[float] = None
    sources: List[SourceRunResult] = field(default_factory=list)
    interrupted: Optional[str] = None
    resumed_from: Optional[str] = None

    @property
    def processed(self) -> int:
        return sum(s.processed for s in self.sources)

    @property
    def added(self) -> int:
        return sum(s.added for s in self.sources)

    @property
    def skipped(self) -> int:
        return sum(s.skipped for s in self.sources)

    @property
    def failed(self) -> int:
        return sum(s.failed for s in self.sources)

    @property
    def status(self) -> str:
        fetch_failures = sum(1 for s in self.sources if s.fetch_error)
        return job_status(self.added + self.skipped, self.failed + fetch_failures)

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "trigger": self.trigger,
            "dry_run": self.dry_run,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "interrupted": self.interrupted,
            "resumed_from": self.resumed_from,
            "processed": self.processed,
            "added": self.added,
            "skipped": self.skipped,
            "failed": self.failed,
            "sources": [s.to_dict() for s in self.sources],
        }


@dataclass(frozen=True)
class FilterDecision:
    job_id: Optional[str]
    source: str
    item_id: str
    title: Optional[str]
    author: Optional[str]
    genres: Tuple[str, ...]
    filter_name: str
    reason: str
    value: str
    ts: float


@dataclass(frozen=True)
class CoverResult:
    url: Optional[str]
    source: str
    placeholder: bool = False


@dataclass(frozen=True)
class JobCursor:
    job_id: str
    source_id: str
    page: int
    offset: int
    batch_size: int
    remaining_sources: Tuple[str, ...]
    state: str
    language: Optional[str] = None


@dataclass(frozen=True)
class Notification:
    name: str
    subject: str
    message: str
    ts: float

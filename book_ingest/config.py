from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

import yaml

from book_ingest.core.errors import ConfigError
from book_ingest.fetchers.registry import validate_config_changes

logger = logging.getLogger(__name__)

PACKAGE_ROOT = Path(__file__).resolve().parent.parent

_ENV_LINE = re.compile(r"^(?:export\s+)?([A-Za-z_][A-Za-z0-9_.]*)\s*=\s*(.*)$")


def _unquote(raw: str) -> str:
    """Value part of KEY=value: quoted text kept verbatim, else cut at an unquoted '#'."""
    raw = raw.strip()
    if raw[:1] in ("'", '"'):
        end = raw.find(raw[0], 1)
        if end != -1:
            return raw[1:end]
    quote = None
    for pos, ch in enumerate(raw):
        if quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == "#":
            return raw[:pos].rstrip()
    return raw


def _env_pairs(text: str) -> Iterator[Tuple[str, str]]:
    for line in text.splitlines():
        m = _ENV_LINE.match(line.strip())
        if m:
            yield m.group(1), _unquote(m.group(2))


def _dotenv_candidates(path: str) -> List[Path]:
    found: List[Path] = []
    if os.getenv("ENV_PATH"):
        found.append(Path(os.environ["ENV_PATH"]).expanduser())
    explicit = Path(path).expanduser()
    found.append(explicit if explicit.is_absolute() else Path.cwd() / explicit)
    found.append(PACKAGE_ROOT / ".env")
    found.append(Path.cwd() / ".env")
    return found


def load_dotenv(path: str = ".env") -> Optional[str]:
    """
    Read the first .env file found and export its keys; variables already set win.

    Looked up in order: $ENV_PATH, `path`, the project root, the working directory.
    Returns the file used, or None.
    """
    tried = set()
    for candidate in _dotenv_candidates(path):
        candidate = candidate.resolve()
        if candidate in tried:
            continue
        tried.add(candidate)
        if not candidate.is_file():
            continue
        try:
            text = candidate.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning("could not read env file | path=%s | err=%s", candidate, e)
            return None
        for key, value in _env_pairs(text):
            os.environ.setdefault(key, value)
        return str(candidate)
    return None


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    v = (os.getenv(name) or "").strip()
    return v or default


def _env_int(name: str, default: int) -> int:
    v = (os.getenv(name) or "").strip()
    if not v:
        return default
    try:
        return int(v)
    except ValueError as e:
        raise SystemExit(f"{name} must be an integer (got {v!r}).") from e


def _env_bool(name: str, default: bool) -> bool:
    v = (os.getenv(name) or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "y", "on")


@dataclass
class AppConfig:
    db_path: str
    sources_file: Optional[str]

    batch_size: int
    default_rate_limit_ms: int
    timeout_s: int
    retries: int
    max_asset_mb: int

    asset_backend: str
    asset_dir: str
    asset_base_url: Optional[str]

    s3_bucket: Optional[str]
    aws_region: str
    cloudfront_domain: Optional[str]

    stop_file: Optional[str]
    pause_file: Optional[str]

    cover_search: bool

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls(
            db_path=_env_str("INGEST_DB_PATH", "book_ingest.db"),
            sources_file=_env_str("INGEST_SOURCES_FILE"),
            batch_size=_env_int("INGEST_BATCH_SIZE", 30),
            default_rate_limit_ms=_env_int("INGEST_DEFAULT_RATE_LIMIT_MS", 1500),
            timeout_s=_env_int("INGEST_TIMEOUT_S", 30),
            retries=_env_int("INGEST_RETRIES", 3),
            max_asset_mb=_env_int("INGEST_MAX_ASSET_MB", 100),
            asset_backend=(_env_str("INGEST_ASSET_BACKEND", "local") or "local").lower(),
            asset_dir=_env_str("INGEST_ASSET_DIR", "assets"),
            asset_base_url=_env_str("INGEST_ASSET_BASE_URL"),
            s3_bucket=_env_str("S3_BUCKET"),
            aws_region=_env_str("AWS_REGION", "us-west-2"),
            cloudfront_domain=_env_str("CLOUDFRONT_DOMAIN"),
            stop_file=_env_str("INGEST_STOP_FILE", ".STOP"),
            pause_file=_env_str("INGEST_PAUSE_FILE", ".PAUSE"),
            cover_search=_env_bool("ENABLE_COVER_SEARCH", True),
        )

    @property
    def max_asset_bytes(self) -> int:
        return self.max_asset_mb * 1024 * 1024

    def validate(self) -> None:
        if (self.db_path or "").strip() in ("", ":memory:"):
            raise SystemExit("INGEST_DB_PATH must name a database file.")
        if self.batch_size < 1:
            raise SystemExit("INGEST_BATCH_SIZE must be >= 1.")
        if self.default_rate_limit_ms < 0:
            raise SystemExit("INGEST_DEFAULT_RATE_LIMIT_MS must be >= 0.")
        if self.retries < 1:
            raise SystemExit("INGEST_RETRIES must be >= 1.")
        if self.max_asset_mb < 1:
            raise SystemExit("INGEST_MAX_ASSET_MB must be >= 1.")
        if self.asset_backend not in ("local", "s3"):
            raise SystemExit("INGEST_ASSET_BACKEND must be 'local' or 's3'.")
        if self.asset_backend == "s3":
            if not (self.s3_bucket or "").strip():
                raise SystemExit("S3 asset backend selected but S3_BUCKET is not set.")
            if "://" in (self.cloudfront_domain or ""):
                raise SystemExit("CLOUDFRONT_DOMAIN must be a bare host name, without a scheme.")


def load_sources_file(path: Optional[str]) -> Dict[str, dict]:
    """
    Per-source seed configuration, applied only to sources with no stored configuration:

        internet_archive:
          enabled: true
          priority: 1
        pdf_site:
          enabled: true
          settings:
            url: https://example.org/library/
    """
    if not path:
        return {}
    p = Path(path).expanduser()
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except FileNotFoundError as e:
        raise SystemExit(f"Sources file not found: {p}") from e
    except (OSError, yaml.YAMLError) as e:
        raise SystemExit(f"Failed to read sources file: {p} ({e})") from e
    if not isinstance(data, dict):
        raise SystemExit(f"Sources file must map source ids to settings: {p}")

    out: Dict[str, dict] = {}
    for sid, seed in data.items():
        if not isinstance(seed, dict):
            raise SystemExit(f"Sources file entry for {sid!r} must be a mapping: {p}")
        try:
            validate_config_changes(seed)
        except ConfigError as e:
            raise SystemExit(f"Sources file entry for {sid!r} is invalid: {e}") from e
        out[str(sid)] = dict(seed)
    logger.info("loaded sources file | path=%s | sources=%s", p, len(out))
    return out

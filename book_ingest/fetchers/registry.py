from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

from book_ingest.core.errors import ConfigError, FetcherContractError
from book_ingest.core.models import SourceConfig
from book_ingest.core.store import CatalogStore

from .base import Fetcher, check_fetcher

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 100
DEFAULT_SOURCE = "internet_archive"
UPDATABLE_KEYS = ("display_name", "enabled", "priority", "rate_limit_ms", "batch_size", "settings")


def validate_config_changes(changes: Mapping[str, Any]) -> None:
    """Raise ConfigError for unknown keys or out-of-range values."""
    unknown = sorted(set(changes) - set(UPDATABLE_KEYS))
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
    if "enabled" in changes and not isinstance(changes["enabled"], bool):
        raise ConfigError("Invalid enabled: must be true or false")
    for key, minimum in (("priority", 0), ("rate_limit_ms", 0), ("batch_size", 1)):
        if key not in changes:
            continue
        v = changes[key]
        if isinstance(v, bool) or not isinstance(v, int) or v < minimum:
            raise ConfigError(f"Invalid {key}: must be an integer >= {minimum}")
    if "settings" in changes and not isinstance(changes["settings"], dict):
        raise ConfigError("Invalid settings: must be a mapping")
    if "display_name" in changes and not str(changes["display_name"] or "").strip():
        raise ConfigError("Invalid display_name: must be non-empty")


class SourceRegistry:
    """
    Registered Fetchers plus their stored configuration.

    Configuration is read fresh from the store by load_configurations(); the Orchestrator
    calls it at the start of every job, so administrative changes apply to the next job.
    """

    def __init__(
        self,
        store: CatalogStore,
        *,
        seeds: Optional[Dict[str, dict]] = None,
        default_rate_limit_ms: int = 1500,
        default_batch_size: int = 30,
    ) -> None:
        self.store = store
        self.seeds: Dict[str, dict] = dict(seeds or {})
        self.default_rate_limit_ms = default_rate_limit_ms
        self.default_batch_size = default_batch_size
        self._fetchers: Dict[str, Fetcher] = {}
        self._configs: Optional[Dict[str, SourceConfig]] = None
        self._errors: Dict[str, str] = {}

    # -----------------------------
    # Registration
    # -----------------------------
    def register(self, fetcher: Fetcher) -> bool:
        label = type(fetcher).__name__
        try:
            check_fetcher(fetcher)
        except FetcherContractError as e:
            self._errors[label] = str(e)
            logger.error("fetcher rejected | fetcher=%s | reason=%s", label, e)
            return False
        try:
            sid = fetcher.source_id()
            meta = fetcher.metadata()
        except Exception as e:
            self._errors[label] = f"raised during registration: {e!r}"
            logger.error("fetcher rejected | fetcher=%s | err=%r", label, e)
            return False
        if not isinstance(sid, str) or not sid.strip():
            self._errors[label] = "source_id() returned an empty id"
            logger.error("fetcher rejected | fetcher=%s | reason=empty source_id", label)
            return False
        if getattr(meta, "display_name", None) is None:
            self._errors[sid] = "metadata() returned no display_name"
            logger.error("fetcher rejected | source=%s | reason=bad metadata", sid)
            return False
        if sid in self._fetchers:
            logger.warning("fetcher already registered | source=%s", sid)
            return False
        self._fetchers[sid] = fetcher
        logger.info("fetcher registered | source=%s | name=%s", sid, meta.display_name)
        return True

    def registration_errors(self) -> Dict[str, str]:
        return dict(self._errors)

    def get_fetcher(self, source_id: str) -> Optional[Fetcher]:
        return self._fetchers.get(source_id)

    def source_ids(self) -> List[str]:
        return sorted(self._fetchers)

    # -----------------------------
    # Configuration
    # -----------------------------
    def default_config(self, fetcher: Fetcher) -> SourceConfig:
        sid = fetcher.source_id()
        meta = fetcher.metadata()
        now = time.time()
        cfg = SourceConfig(
            source_id=sid,
            display_name=meta.display_name,
            enabled=sid == DEFAULT_SOURCE,
            priority=1 if sid == DEFAULT_SOURCE else DEFAULT_PRIORITY,
            rate_limit_ms=int(meta.default_rate_limit_ms or self.default_rate_limit_ms),
            batch_size=int(meta.default_batch_size or self.default_batch_size),
            settings={},
            created_at=now,
            updated_at=now,
        )
        seed = self.seeds.get(sid)
        if seed:
            validate_config_changes(seed)
            cfg = replace(cfg, **seed)
        return cfg

    def load_configurations(self, persist: bool = True) -> Dict[str, SourceConfig]:
        configs = self.store.all_configs()
        for sid, fetcher in self._fetchers.items():
            if sid in configs:
                continue
            cfg = self.default_config(fetcher)
            if persist:
                if self.store.insert_config_if_missing(cfg):
                    logger.info(
                        "default configuration created | source=%s | enabled=%s", sid, cfg.enabled
                    )
                cfg = self.store.get_config(sid) or cfg
            configs[sid] = cfg
        for sid, fetcher in self._fetchers.items():
            fetcher.configure(configs[sid].settings)
        self._configs = configs
        return dict(configs)

    def get_configuration(self, source_id: str) -> Optional[SourceConfig]:
        if self._configs is None:
            self.load_configurations(persist=False)
        return (self._configs or {}).get(source_id)

    def enabled_fetchers(self) -> List[Tuple[Fetcher, SourceConfig]]:
        """Enabled, registered sources: priority ascending, ties by source id."""
        if self._configs is None:
            self.load_configurations(persist=False)
        pairs = [
            (self._fetchers[sid], cfg)
            for sid, cfg in (self._configs or {}).items()
            if cfg.enabled and sid in self._fetchers
        ]
        pairs.sort(key=lambda p: (p[1].priority, p[1].source_id))
        return pairs

    def update_configuration(self, source_id: str, **changes: Any) -> SourceConfig:
        validate_config_changes(changes)
        fetcher = self._fetchers.get(source_id)
        current = self.store.get_config(source_id)
        if current is None:
            if fetcher is None:
                raise ConfigError(f"Unknown source: {source_id}")
            self.store.insert_config_if_missing(self.default_config(fetcher))
            current = self.store.get_config(source_id)
        updated = replace(current, **changes)
        self.store.update_config(updated)
        logger.info(
            "configuration updated | source=%s | changes=%s",
            source_id,
            ",".join(f"{k}={v}" for k, v in sorted(changes.items())),
        )
        if self._configs is not None:
            self._configs[source_id] = updated
        return updated

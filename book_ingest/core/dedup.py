from __future__ import annotations

import logging
from typing import List, Sequence, Set

from .models import RawItem
from .normalize import identifier_key
from .store import CatalogStore

logger = logging.getLogger(__name__)


class DedupEngine:
    """
    Advisory duplicate check against the catalog.

    A positive answer is authoritative for the moment it is read. A negative answer can
    go stale under concurrent jobs; the store's unique constraint settles that race.
    """

    def __init__(self, store: CatalogStore) -> None:
        self.store = store

    def exists(self, source_id: str, item_id: str) -> bool:
        return self.store.book_exists(source_id, identifier_key(item_id))

    def known_identifiers(self, source_id: str, items: Sequence[RawItem]) -> Set[str]:
        """Identifiers from `items` already in the catalog, in one query."""
        if not items:
            return set()
        return self.store.existing_identifiers(source_id, (identifier_key(i.identifier) for i in items))

    def filter_new(self, source_id: str, items: Sequence[RawItem]) -> List[RawItem]:
        if not items:
            return []
        known = self.known_identifiers(source_id, items)
        seen: Set[str] = set()
        out: List[RawItem] = []
        for item in items:
            key = identifier_key(item.identifier)
            if key in known or key in seen:
                continue
            seen.add(key)
            out.append(item)
        logger.debug(
            "dedup | source=%s | in=%s | new=%s | known=%s",
            source_id,
            len(items),
            len(out),
            len(known),
        )
        return out

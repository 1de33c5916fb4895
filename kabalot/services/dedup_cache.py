"""Content-addressed memo of previously extracted expense records."""

from __future__ import annotations

import hashlib
import logging
from collections import OrderedDict
from pathlib import Path
from typing import Dict, Optional

from kabalot.schemas import ExpenseRecord

logger = logging.getLogger(__name__)


def content_hash(payload: bytes) -> str:
    """Return the SHA256 hex digest used as the cache key."""
    return hashlib.sha256(payload).hexdigest()


def file_content_hash(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


class DedupCache:
    """Bounded, recency-ordered cache of expense records keyed by content hash.

    Shared by every job in the process. Reads refresh recency; once more than
    ``capacity`` keys are held the least recently used one is evicted. A race
    between two workers on the same key only results in one redundant store.
    """

    def __init__(self, capacity: int = 512) -> None:
        if capacity < 1:
            raise ValueError("Dedup cache capacity must be at least 1.")
        self._capacity = capacity
        self._entries: "OrderedDict[str, ExpenseRecord]" = OrderedDict()
        self._hits = 0
        self._misses = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Optional[ExpenseRecord]:
        record = self._entries.get(key)
        if record is None:
            self._misses += 1
            return None
        self._entries.move_to_end(key)
        self._hits += 1
        return record

    def put(self, key: str, record: ExpenseRecord) -> None:
        self._entries[key] = record
        self._entries.move_to_end(key)
        while len(self._entries) > self._capacity:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted dedup cache entry %s", evicted[:12])

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> Dict[str, int]:
        return {
            "size": len(self._entries),
            "capacity": self._capacity,
            "hits": self._hits,
            "misses": self._misses,
        }


__all__ = ["DedupCache", "content_hash", "file_content_hash"]

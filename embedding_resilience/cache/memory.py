"""
Process-local cache store.

An ``OrderedDict`` kept in access order gives least-recently-used eviction
for free. Every method completes without awaiting, so calls are atomic with
respect to other tasks on the same event loop.
"""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Sequence
from dataclasses import replace
from typing import Any

from .base import CacheStore, MetadataPredicate
from .models import CacheEntry


class MemoryCacheStore(CacheStore):
    """In-memory LRU store with an optional hard size bound."""

    def __init__(self, max_entries: int | None = None):
        if max_entries is not None and max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")
        self.max_entries = max_entries
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    async def fetch(self, keys: Sequence[str], now: float) -> dict[str, CacheEntry]:
        found: dict[str, CacheEntry] = {}
        for key in keys:
            entry = self._entries.get(key)
            if entry is None:
                continue
            if entry.is_expired(now):
                del self._entries[key]
                continue
            entry.last_accessed_at = now
            entry.hit_count += 1
            self._entries.move_to_end(key)
            found[key] = replace(entry, vector=list(entry.vector))
        return found

    async def upsert(self, entries: Sequence[CacheEntry]) -> None:
        for entry in entries:
            existing = self._entries.pop(entry.key, None)
            stored = replace(entry, vector=list(entry.vector), metadata=dict(entry.metadata))
            if existing is not None:
                stored.created_at = existing.created_at
                stored.hit_count = existing.hit_count
            self._entries[entry.key] = stored

        if self.max_entries is not None:
            await self.evict_lru(self.max_entries)

    async def delete(self, keys: Sequence[str]) -> int:
        removed = 0
        for key in keys:
            if self._entries.pop(key, None) is not None:
                removed += 1
        return removed

    async def delete_where(self, predicate: MetadataPredicate) -> int:
        doomed = [key for key, entry in self._entries.items() if predicate(entry.metadata)]
        return await self.delete(doomed)

    async def count(self) -> int:
        return len(self._entries)

    async def purge_expired(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        return await self.delete(expired)

    async def evict_lru(self, max_entries: int) -> int:
        evicted = 0
        while len(self._entries) > max_entries:
            self._entries.popitem(last=False)
            evicted += 1
        return evicted

    async def clear(self) -> int:
        removed = len(self._entries)
        self._entries.clear()
        return removed

    async def summary(self) -> dict[str, Any]:
        entries = list(self._entries.values())
        if not entries:
            return {"entries": 0, "avg_dimension": 0.0, "oldest": None, "newest": None, "total_hits": 0}
        return {
            "entries": len(entries),
            "avg_dimension": sum(e.dimension for e in entries) / len(entries),
            "oldest": min(e.created_at for e in entries),
            "newest": max(e.created_at for e in entries),
            "total_hits": sum(e.hit_count for e in entries),
        }

    async def close(self) -> None:
        return None

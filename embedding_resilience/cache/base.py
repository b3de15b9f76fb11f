"""
Abstract base class for embedding cache storage.

A store is a plain key-value collaborator: upsert, point/bulk lookup,
delete-by-predicate and count. Policy (keys, TTLs, validation, statistics,
error absorption) lives in ``EmbeddingCache``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from .models import CacheEntry

MetadataPredicate = Callable[[Mapping[str, Any]], bool]


class CacheStore(ABC):
    """Storage backend for cache entries."""

    @abstractmethod
    async def fetch(self, keys: Sequence[str], now: float) -> dict[str, CacheEntry]:
        """
        Look up non-expired entries.

        Every returned entry has ``last_accessed_at`` set to ``now`` and its
        ``hit_count`` incremented, both in the store and in the returned copy.

        Args:
            keys: Cache keys to look up
            now: Current epoch time

        Returns:
            Mapping of key to entry (hits only)
        """
        pass

    @abstractmethod
    async def upsert(self, entries: Sequence[CacheEntry]) -> None:
        """Insert or merge entries by key.

        An existing key keeps its ``created_at`` and ``hit_count``; vector,
        metadata, ``last_accessed_at`` and ``expires_at`` are replaced.
        """
        pass

    @abstractmethod
    async def delete(self, keys: Sequence[str]) -> int:
        pass

    @abstractmethod
    async def delete_where(self, predicate: MetadataPredicate) -> int:
        """Delete entries whose metadata satisfies ``predicate``."""
        pass

    @abstractmethod
    async def count(self) -> int:
        pass

    @abstractmethod
    async def purge_expired(self, now: float) -> int:
        pass

    @abstractmethod
    async def evict_lru(self, max_entries: int) -> int:
        """Remove least-recently-accessed entries until at most ``max_entries`` remain."""
        pass

    @abstractmethod
    async def clear(self) -> int:
        pass

    @abstractmethod
    async def summary(self) -> dict[str, Any]:
        """Aggregate figures: entries, avg_dimension, oldest, newest, total_hits."""
        pass

    async def ping(self) -> None:
        """Raise if the store cannot serve requests."""
        await self.count()

    async def reconnect(self) -> None:
        """Re-establish the underlying connection (no-op for in-process stores)."""
        return None

    @abstractmethod
    async def close(self) -> None:
        pass

    async def __aenter__(self) -> CacheStore:
        return self

    async def __aexit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        await self.close()

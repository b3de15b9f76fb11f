"""
Embedding cache manager.

Sits in front of a ``CacheStore`` and owns the caching policy: key
derivation, TTLs, vector validation, probabilistic maintenance, statistics,
and absorbing store failures. A broken store behaves like an always-missing
cache; it never breaks embedding generation.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from typing import Any

import numpy as np

from ..config import CacheConfig
from ..exceptions import DegradationFailure
from ..tokens import count_tokens, estimate_cost
from .base import CacheStore, MetadataPredicate
from .models import CacheEntry, EmbeddingMeta, make_cache_key, normalize_text

logger = logging.getLogger(__name__)

MAX_VECTOR_DIMENSION = 16_000

Vector = list[float]
BatchGenerator = Callable[[list[str]], Awaitable[Mapping[int, Vector]]]


class EmbeddingCache:
    """
    Content-addressed embedding cache.

    Features:
    - SHA-256 keys over normalized text plus provider/model/dimension
    - Upsert writes (re-caching refreshes instead of duplicating)
    - TTL expiry and LRU bound enforced by a probabilistic maintenance pass
    - Hit/miss accounting with estimated tokens and cost saved
    """

    def __init__(
        self,
        store: CacheStore,
        config: CacheConfig | None = None,
        clock: Callable[[], float] = time.time,
        rand: Callable[[], float] = random.random,
    ):
        self.store = store
        self.config = config or CacheConfig()
        self._clock = clock
        self._rand = rand

        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._errors = 0
        self._tokens_saved = 0
        self._cost_saved = 0.0

    @staticmethod
    def make_key(text: str, meta: EmbeddingMeta) -> str:
        return make_cache_key(text, meta)

    # -- reads ---------------------------------------------------------------

    async def get(self, text: str, meta: EmbeddingMeta) -> Vector | None:
        """Cached vector for ``text`` under ``meta``, or None."""
        hits = await self.get_multiple([text], meta)
        return hits.get(text)

    async def get_multiple(self, texts: Sequence[str], meta: EmbeddingMeta) -> dict[str, Vector]:
        """
        Bulk lookup.

        Args:
            texts: Texts to look up (blank texts are ignored)
            meta: Embedding configuration identity

        Returns:
            Mapping of text to vector, containing hits only
        """
        keyed: dict[str, list[str]] = {}
        for text in texts:
            if not normalize_text(text):
                continue
            keyed.setdefault(make_cache_key(text, meta), []).append(text)
        if not keyed:
            return {}

        try:
            entries = await self.store.fetch(list(keyed), self._clock())
        except Exception as e:
            self._errors += 1
            self._misses += len(keyed)
            logger.warning(f"Cache lookup failed, treating as miss: {e}")
            return {}

        results: dict[str, Vector] = {}
        for key, key_texts in keyed.items():
            entry = entries.get(key)
            if entry is None:
                self._misses += 1
                continue
            self._hits += 1
            for text in key_texts:
                results[text] = entry.vector
            self._record_savings(key_texts[0], meta)
        return results

    def _record_savings(self, text: str, meta: EmbeddingMeta) -> None:
        tokens = count_tokens(text)
        self._tokens_saved += tokens
        self._cost_saved += estimate_cost(meta.model, tokens)

    # -- writes --------------------------------------------------------------

    def _validate_vector(self, vector: Sequence[float], meta: EmbeddingMeta) -> str | None:
        """Return a reason the vector is unusable, or None if it is fine."""
        if not vector:
            return "empty vector"
        if len(vector) > MAX_VECTOR_DIMENSION:
            return f"dimension {len(vector)} exceeds {MAX_VECTOR_DIMENSION}"
        if meta.dimension and len(vector) != meta.dimension:
            return f"dimension {len(vector)} does not match configured {meta.dimension}"
        if any(isinstance(v, bool) for v in vector):
            return "non-numeric component"
        try:
            arr = np.asarray(vector, dtype=np.float64)
        except (TypeError, ValueError):
            return "non-numeric component"
        if arr.ndim != 1 or not np.isfinite(arr).all():
            return "non-finite component"
        return None

    def _build_entry(
        self, text: str, vector: Sequence[float], meta: EmbeddingMeta, ttl: float | None, now: float
    ) -> CacheEntry | None:
        if not normalize_text(text):
            logger.debug("Refusing to cache empty text")
            return None
        reason = self._validate_vector(vector, meta)
        if reason is not None:
            logger.warning(f"Refusing to cache invalid vector: {reason}")
            return None
        lifetime = self.config.default_ttl if ttl is None else ttl
        return CacheEntry(
            key=make_cache_key(text, meta),
            vector=[float(v) for v in vector],
            dimension=len(vector),
            created_at=now,
            last_accessed_at=now,
            expires_at=now + lifetime if lifetime > 0 else None,
            metadata={
                "provider": meta.provider,
                "model": meta.model,
                "dimension": meta.dimension,
                "text_length": len(text),
                **dict(meta.extra),
            },
        )

    async def set(
        self, text: str, vector: Sequence[float], meta: EmbeddingMeta, ttl: float | None = None
    ) -> bool:
        """Cache one vector. Returns False if it was rejected or the store failed."""
        return await self.set_multiple({text: vector}, meta, ttl)

    async def set_multiple(
        self, items: Mapping[str, Sequence[float]], meta: EmbeddingMeta, ttl: float | None = None
    ) -> bool:
        """Cache several vectors in one write. False if any was rejected or the write failed."""
        now = self._clock()
        entries = [self._build_entry(text, vec, meta, ttl, now) for text, vec in items.items()]
        valid = [e for e in entries if e is not None]
        if valid:
            try:
                await self.store.upsert(valid)
            except Exception as e:
                self._errors += 1
                logger.warning(f"Cache write failed for {len(valid)} entries: {e}")
                return False
            self._sets += len(valid)
            await self._maybe_run_maintenance()
        return len(valid) == len(entries)

    async def _maybe_run_maintenance(self) -> None:
        if self._rand() < self.config.cleanup_probability:
            await self.maintenance()

    # -- invalidation --------------------------------------------------------

    async def invalidate(self, predicate: MetadataPredicate) -> int:
        """Delete every entry whose metadata satisfies ``predicate``."""
        try:
            removed = await self.store.delete_where(predicate)
        except Exception as e:
            self._errors += 1
            logger.warning(f"Cache invalidation failed: {e}")
            return 0
        if removed:
            logger.info(f"Invalidated {removed} cache entries")
        return removed

    async def invalidate_model(self, provider: str, model: str) -> int:
        """Drop vectors produced by a provider/model pair (after a configuration change)."""
        return await self.invalidate(
            lambda m: m.get("provider") == provider and m.get("model") == model
        )

    async def invalidate_text(self, text: str, meta: EmbeddingMeta) -> bool:
        if not normalize_text(text):
            return False
        try:
            return await self.store.delete([make_cache_key(text, meta)]) > 0
        except Exception as e:
            self._errors += 1
            logger.warning(f"Cache delete failed: {e}")
            return False

    async def clear(self) -> int:
        try:
            removed = await self.store.clear()
        except Exception as e:
            self._errors += 1
            logger.warning(f"Cache clear failed: {e}")
            return 0
        logger.info(f"Cleared {removed} cache entries")
        return removed

    # -- maintenance and statistics ------------------------------------------

    async def maintenance(self) -> dict[str, int]:
        """Purge expired entries, then enforce the entry bound (LRU first)."""
        expired = evicted = 0
        try:
            expired = await self.store.purge_expired(self._clock())
            evicted = await self.store.evict_lru(self.config.max_entries)
        except Exception as e:
            self._errors += 1
            logger.warning(f"Cache maintenance failed: {e}")
        if expired or evicted:
            logger.info(f"Cache maintenance removed {expired} expired, {evicted} evicted entries")
        return {"expired_removed": expired, "evicted": evicted}

    async def stats(self) -> dict[str, Any]:
        lookups = self._hits + self._misses
        stats: dict[str, Any] = {
            "entries": 0,
            "hit_rate": self._hits / lookups if lookups else 0.0,
            "avg_dimension": 0.0,
            "oldest": None,
            "newest": None,
            "hits": self._hits,
            "misses": self._misses,
            "sets": self._sets,
            "errors": self._errors,
            "estimated_tokens_saved": self._tokens_saved,
            "estimated_cost_saved_usd": round(self._cost_saved, 6),
            "max_entries": self.config.max_entries,
        }
        try:
            summary = await self.store.summary()
        except Exception as e:
            self._errors += 1
            logger.warning(f"Cache summary failed: {e}")
            stats["available"] = False
            return stats
        stats.update(summary)
        stats["available"] = True
        return stats

    async def warmup(
        self, texts: Iterable[str], meta: EmbeddingMeta, generator: BatchGenerator
    ) -> int:
        """
        Pre-populate the cache for texts that are not cached yet.

        Args:
            texts: Candidate texts
            meta: Embedding configuration identity
            generator: Async callable mapping a list of texts to
                ``{position: vector}`` (e.g. the orchestrator's batch method)

        Returns:
            Number of vectors written
        """
        candidates = list(dict.fromkeys(t for t in texts if normalize_text(t)))
        if not candidates:
            return 0
        cached = await self.get_multiple(candidates, meta)
        missing = [t for t in candidates if t not in cached]
        if not missing:
            return 0

        try:
            generated = await generator(missing)
        except DegradationFailure as e:
            if e.outcome is None:
                logger.warning(f"Cache warmup failed: {e}")
                return 0
            generated = e.outcome.successful

        vectors = {missing[pos]: vec for pos, vec in generated.items() if 0 <= pos < len(missing)}
        if vectors:
            await self.set_multiple(vectors, meta)
        logger.info(f"Cache warmup generated {len(vectors)}/{len(missing)} embeddings")
        return len(vectors)

    async def ping(self) -> None:
        """Raise if the underlying store is unusable (used by health checks)."""
        await self.store.ping()

    async def reconnect(self) -> None:
        await self.store.reconnect()

    async def close(self) -> None:
        try:
            await self.store.close()
        except Exception as e:
            logger.warning(f"Error closing cache store: {e}")

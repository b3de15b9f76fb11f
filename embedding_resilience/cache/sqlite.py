"""
Durable cache store on SQLite.

Vectors are stored as float64 bytes (lossless for Python floats), optionally
zlib-compressed. Writes use ``INSERT ... ON CONFLICT DO UPDATE`` so re-caching
a key merges into the existing row.
"""

from __future__ import annotations

import asyncio
import json
import logging
import zlib
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiosqlite
import numpy as np

from ..exceptions import DegradationFailure, FailureKind
from .base import CacheStore, MetadataPredicate
from .models import CacheEntry

logger = logging.getLogger(__name__)

# Stay well below SQLITE_MAX_VARIABLE_NUMBER
_KEY_CHUNK = 500

_COLUMNS = (
    "cache_key",
    "vector",
    "dimension",
    "compressed",
    "created_at",
    "last_accessed_at",
    "expires_at",
    "hit_count",
    "metadata",
)

_UPSERT_SQL = f"""
    INSERT INTO embedding_cache ({", ".join(_COLUMNS)})
    VALUES ({", ".join("?" for _ in _COLUMNS)})
    ON CONFLICT (cache_key) DO UPDATE SET
        vector = excluded.vector,
        dimension = excluded.dimension,
        compressed = excluded.compressed,
        last_accessed_at = excluded.last_accessed_at,
        expires_at = excluded.expires_at,
        metadata = excluded.metadata
"""


@dataclass
class SQLiteCacheConfig:
    """Configuration for the SQLite cache store."""

    db_path: str | Path = ":memory:"
    enable_compression: bool = True


def encode_vector(vector: Sequence[float], compress: bool) -> bytes:
    data = np.asarray(vector, dtype=np.float64).tobytes()
    return zlib.compress(data) if compress else data


def decode_vector(blob: bytes, compressed: bool) -> list[float]:
    data = zlib.decompress(blob) if compressed else blob
    return np.frombuffer(data, dtype=np.float64).tolist()


class SQLiteCacheStore(CacheStore):
    """
    SQLite-backed cache store.

    Features:
    - Single file database (or ``:memory:`` for tests)
    - Indexes on expiry and last access for maintenance passes
    - Lossless float64 vectors with optional compression
    """

    def __init__(self, config: SQLiteCacheConfig | None = None):
        self.config = config or SQLiteCacheConfig()
        self.conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._initialized = False

    @classmethod
    async def create(cls, config: SQLiteCacheConfig | None = None) -> SQLiteCacheStore:
        """Create and initialize the store."""
        store = cls(config)
        await store.initialize()
        return store

    async def initialize(self) -> None:
        """Open the connection and create the schema."""
        if self._initialized:
            return

        try:
            self.conn = await aiosqlite.connect(str(self.config.db_path))
            await self.conn.execute("""
                CREATE TABLE IF NOT EXISTS embedding_cache (
                    cache_key TEXT NOT NULL PRIMARY KEY,
                    vector BLOB NOT NULL,
                    dimension INTEGER NOT NULL,
                    compressed INTEGER NOT NULL DEFAULT 0,
                    created_at REAL NOT NULL,
                    last_accessed_at REAL NOT NULL,
                    expires_at REAL,
                    hit_count INTEGER NOT NULL DEFAULT 0,
                    metadata TEXT
                )
            """)
            await self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_cache_expires ON embedding_cache (expires_at)"
            )
            await self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_cache_accessed "
                "ON embedding_cache (last_accessed_at)"
            )
            await self.conn.commit()
            self._initialized = True
            logger.info(f"SQLite cache store initialized: {self.config.db_path}")
        except Exception as e:
            raise DegradationFailure(
                FailureKind.CACHE_DEGRADED,
                f"Failed to open cache database {self.config.db_path}",
                context={"db_path": str(self.config.db_path)},
                cause=e,
            ) from e

    async def _connection(self) -> aiosqlite.Connection:
        if not self._initialized:
            await self.initialize()
        assert self.conn is not None
        return self.conn

    def _row_to_entry(self, row: Sequence[Any]) -> CacheEntry:
        key, blob, dimension, compressed, created, accessed, expires, hits, metadata = row
        return CacheEntry(
            key=key,
            vector=decode_vector(blob, bool(compressed)),
            dimension=dimension,
            created_at=created,
            last_accessed_at=accessed,
            expires_at=expires,
            hit_count=hits,
            metadata=json.loads(metadata) if metadata else {},
        )

    async def fetch(self, keys: Sequence[str], now: float) -> dict[str, CacheEntry]:
        conn = await self._connection()
        found: dict[str, CacheEntry] = {}
        unique_keys = list(dict.fromkeys(keys))

        async with self._lock:
            for start in range(0, len(unique_keys), _KEY_CHUNK):
                chunk = unique_keys[start : start + _KEY_CHUNK]
                placeholders = ", ".join("?" for _ in chunk)
                async with conn.execute(
                    f"SELECT {', '.join(_COLUMNS)} FROM embedding_cache "
                    f"WHERE cache_key IN ({placeholders}) "
                    "AND (expires_at IS NULL OR expires_at > ?)",
                    (*chunk, now),
                ) as cursor:
                    rows = await cursor.fetchall()

                hit_keys = []
                for row in rows:
                    entry = self._row_to_entry(row)
                    entry.last_accessed_at = now
                    entry.hit_count += 1
                    found[entry.key] = entry
                    hit_keys.append(entry.key)

                if hit_keys:
                    marks = ", ".join("?" for _ in hit_keys)
                    await conn.execute(
                        "UPDATE embedding_cache SET last_accessed_at = ?, "
                        f"hit_count = hit_count + 1 WHERE cache_key IN ({marks})",
                        (now, *hit_keys),
                    )
            await conn.commit()
        return found

    async def upsert(self, entries: Sequence[CacheEntry]) -> None:
        if not entries:
            return
        conn = await self._connection()
        compress = self.config.enable_compression
        rows = [
            (
                entry.key,
                encode_vector(entry.vector, compress),
                entry.dimension,
                1 if compress else 0,
                entry.created_at,
                entry.last_accessed_at,
                entry.expires_at,
                entry.hit_count,
                json.dumps(entry.metadata, default=str),
            )
            for entry in entries
        ]
        async with self._lock:
            await conn.executemany(_UPSERT_SQL, rows)
            await conn.commit()

    async def delete(self, keys: Sequence[str]) -> int:
        conn = await self._connection()
        removed = 0
        async with self._lock:
            for start in range(0, len(keys), _KEY_CHUNK):
                chunk = list(keys[start : start + _KEY_CHUNK])
                placeholders = ", ".join("?" for _ in chunk)
                cursor = await conn.execute(
                    f"DELETE FROM embedding_cache WHERE cache_key IN ({placeholders})", chunk
                )
                removed += cursor.rowcount
            await conn.commit()
        return removed

    async def delete_where(self, predicate: MetadataPredicate) -> int:
        conn = await self._connection()
        async with conn.execute("SELECT cache_key, metadata FROM embedding_cache") as cursor:
            rows = await cursor.fetchall()
        doomed = [key for key, metadata in rows if predicate(json.loads(metadata) if metadata else {})]
        if not doomed:
            return 0
        return await self.delete(doomed)

    async def count(self) -> int:
        conn = await self._connection()
        async with conn.execute("SELECT COUNT(*) FROM embedding_cache") as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def purge_expired(self, now: float) -> int:
        conn = await self._connection()
        async with self._lock:
            cursor = await conn.execute(
                "DELETE FROM embedding_cache WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (now,),
            )
            await conn.commit()
        return cursor.rowcount

    async def evict_lru(self, max_entries: int) -> int:
        excess = await self.count() - max_entries
        if excess <= 0:
            return 0
        conn = await self._connection()
        async with self._lock:
            cursor = await conn.execute(
                """
                DELETE FROM embedding_cache WHERE cache_key IN (
                    SELECT cache_key FROM embedding_cache
                    ORDER BY last_accessed_at ASC LIMIT ?
                )
                """,
                (excess,),
            )
            await conn.commit()
        return cursor.rowcount

    async def clear(self) -> int:
        conn = await self._connection()
        async with self._lock:
            cursor = await conn.execute("DELETE FROM embedding_cache")
            await conn.commit()
        return cursor.rowcount

    async def summary(self) -> dict[str, Any]:
        conn = await self._connection()
        async with conn.execute(
            "SELECT COUNT(*), AVG(dimension), MIN(created_at), MAX(created_at), "
            "COALESCE(SUM(hit_count), 0) FROM embedding_cache"
        ) as cursor:
            row = await cursor.fetchone()
        entries, avg_dimension, oldest, newest, total_hits = row
        return {
            "entries": int(entries),
            "avg_dimension": float(avg_dimension or 0.0),
            "oldest": oldest,
            "newest": newest,
            "total_hits": int(total_hits),
        }

    async def ping(self) -> None:
        conn = await self._connection()
        async with conn.execute("SELECT 1") as cursor:
            await cursor.fetchone()

    async def reconnect(self) -> None:
        await self.close()
        await self.initialize()

    async def close(self) -> None:
        """Close SQLite connection."""
        if self.conn:
            await self.conn.close()
            self.conn = None
        self._initialized = False

"""
Tests for the SQLite cache store.

Uses an in-memory database for speed.
"""

import pytest

from embedding_resilience.cache import CacheEntry, SQLiteCacheConfig, SQLiteCacheStore
from embedding_resilience.cache.sqlite import decode_vector, encode_vector
from embedding_resilience.exceptions import DegradationFailure, FailureKind


def entry(key, vector=None, created=100.0, accessed=100.0, expires=None, **metadata):
    vector = vector if vector is not None else [0.1, 0.2, 0.3]
    return CacheEntry(
        key=key,
        vector=vector,
        dimension=len(vector),
        created_at=created,
        last_accessed_at=accessed,
        expires_at=expires,
        metadata=metadata,
    )


@pytest.fixture
async def store():
    """Create in-memory SQLite store for testing."""
    store = await SQLiteCacheStore.create(SQLiteCacheConfig(db_path=":memory:"))
    yield store
    await store.close()


class TestVectorEncoding:
    @pytest.mark.parametrize("compress", [True, False])
    def test_lossless(self, compress):
        """float64 encoding preserves Python floats exactly."""
        vector = [0.1, -2.5e-300, 1.0 / 3.0, 12345.678901234567]

        assert decode_vector(encode_vector(vector, compress), compress) == vector


class TestSQLiteCacheStore:
    @pytest.mark.asyncio
    async def test_upsert_and_fetch(self, store):
        await store.upsert([entry("k1", provider="mock")])

        found = await store.fetch(["k1", "missing"], now=200.0)

        assert set(found) == {"k1"}
        assert found["k1"].vector == [0.1, 0.2, 0.3]
        assert found["k1"].metadata == {"provider": "mock"}
        assert found["k1"].hit_count == 1
        assert found["k1"].last_accessed_at == 200.0

    @pytest.mark.asyncio
    async def test_fetch_updates_access_bookkeeping(self, store):
        await store.upsert([entry("k1")])

        await store.fetch(["k1"], now=200.0)
        found = await store.fetch(["k1"], now=300.0)

        assert found["k1"].hit_count == 2
        summary = await store.summary()
        assert summary["total_hits"] == 2

    @pytest.mark.asyncio
    async def test_upsert_merges_existing_row(self, store):
        """Re-caching keeps created_at and hit_count and replaces the vector."""
        await store.upsert([entry("k1", created=100.0)])
        await store.fetch(["k1"], now=150.0)

        await store.upsert([entry("k1", vector=[9.0, 8.0, 7.0], created=500.0, accessed=500.0)])

        found = await store.fetch(["k1"], now=600.0)
        assert found["k1"].vector == [9.0, 8.0, 7.0]
        assert found["k1"].created_at == 100.0
        assert found["k1"].hit_count == 2
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_expired_entries_not_returned(self, store):
        await store.upsert([entry("k1", expires=150.0), entry("k2", expires=None)])

        assert set(await store.fetch(["k1", "k2"], now=150.0)) == {"k2"}
        assert await store.purge_expired(now=150.0) == 1
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_evict_lru(self, store):
        await store.upsert(
            [entry("old", accessed=1.0), entry("mid", accessed=2.0), entry("new", accessed=3.0)]
        )

        assert await store.evict_lru(max_entries=2) == 1
        assert set(await store.fetch(["old", "mid", "new"], now=10.0)) == {"mid", "new"}
        assert await store.evict_lru(max_entries=5) == 0

    @pytest.mark.asyncio
    async def test_delete_where(self, store):
        await store.upsert(
            [
                entry("a", provider="openai", model="m1"),
                entry("b", provider="openai", model="m2"),
                entry("c", provider="azure_openai", model="m1"),
            ]
        )

        removed = await store.delete_where(lambda m: m.get("model") == "m1")

        assert removed == 2
        assert set(await store.fetch(["a", "b", "c"], now=0.0)) == {"b"}

    @pytest.mark.asyncio
    async def test_many_keys_are_chunked(self, store):
        """Lookups and deletes larger than one parameter chunk work."""
        keys = [f"k{i}" for i in range(1200)]
        await store.upsert([entry(k) for k in keys])

        assert len(await store.fetch(keys, now=0.0)) == 1200
        assert await store.delete(keys[:700]) == 700
        assert await store.count() == 500

    @pytest.mark.asyncio
    async def test_summary_and_clear(self, store):
        await store.upsert([entry("a", created=10.0), entry("b", vector=[1.0] * 5, created=20.0)])

        summary = await store.summary()
        assert summary["entries"] == 2
        assert summary["avg_dimension"] == 4.0
        assert summary["oldest"] == 10.0
        assert summary["newest"] == 20.0

        assert await store.clear() == 2
        assert (await store.summary())["entries"] == 0

    @pytest.mark.asyncio
    async def test_uncompressed_storage(self):
        store = await SQLiteCacheStore.create(
            SQLiteCacheConfig(db_path=":memory:", enable_compression=False)
        )
        try:
            await store.upsert([entry("k1", vector=[1.5, 2.5])])
            assert (await store.fetch(["k1"], now=0.0))["k1"].vector == [1.5, 2.5]
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_ping_and_reconnect(self, store):
        await store.ping()
        await store.reconnect()
        await store.ping()

    @pytest.mark.asyncio
    async def test_unopenable_database_is_cache_degraded(self, tmp_path):
        """Failure to open the database surfaces as CACHE_DEGRADED."""
        missing_dir = tmp_path / "does-not-exist" / "cache.db"

        with pytest.raises(DegradationFailure) as exc_info:
            await SQLiteCacheStore.create(SQLiteCacheConfig(db_path=missing_dir))

        assert exc_info.value.kind is FailureKind.CACHE_DEGRADED

"""
Content-addressed embedding cache.

Provides:
- EmbeddingCache policy manager
- CacheStore interface with in-memory and SQLite implementations
- Key derivation over normalized text and embedding metadata
"""

from .base import CacheStore
from .manager import EmbeddingCache
from .memory import MemoryCacheStore
from .models import CacheEntry, EmbeddingMeta, make_cache_key, normalize_text
from .sqlite import SQLiteCacheConfig, SQLiteCacheStore

__all__ = [
    "CacheEntry",
    "CacheStore",
    "EmbeddingCache",
    "EmbeddingMeta",
    "MemoryCacheStore",
    "SQLiteCacheConfig",
    "SQLiteCacheStore",
    "make_cache_key",
    "normalize_text",
]

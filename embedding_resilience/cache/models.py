"""
Cache entry types and content-addressed key derivation.
"""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Any

# C0 control characters except tab/newline/carriage return, plus DEL
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


@dataclass(frozen=True)
class EmbeddingMeta:
    """Identity of the configuration that produced a vector.

    Folded into every cache key, so switching provider, model or dimension
    can never serve a vector produced under the old configuration.
    """

    provider: str
    model: str
    dimension: int
    extra: tuple[tuple[str, str], ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "dimension": self.dimension,
            "extra": dict(self.extra),
        }


@dataclass
class CacheEntry:
    """A cached vector plus its bookkeeping. Timestamps are epoch seconds."""

    key: str
    vector: list[float]
    dimension: int
    created_at: float
    last_accessed_at: float
    expires_at: float | None = None
    hit_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now


def normalize_text(text: str) -> str:
    """Strip control characters, collapse whitespace runs, trim."""
    return " ".join(_CONTROL_CHARS.sub("", text).split())


def make_cache_key(text: str, meta: EmbeddingMeta) -> str:
    """
    Derive the cache key for ``text`` under ``meta``.

    SHA-256 over a canonical JSON document of the normalized text and the
    metadata, so the key is a pure function of its inputs.

    Raises:
        ValueError: If the text is empty after normalization
    """
    normalized = normalize_text(text)
    if not normalized:
        raise ValueError("Cannot derive a cache key for empty text")
    document = {"text": normalized, **meta.as_dict()}
    payload = json.dumps(document, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()

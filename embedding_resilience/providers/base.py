"""
Abstract base class for embedding providers.

Implementations differ only in endpoint, authentication and request shaping;
the rest of the package relies on nothing beyond the vectors and their length.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

logger = logging.getLogger(__name__)


class EmbeddingProvider(ABC):
    """Abstract base for embedding generation."""

    # Model dimension mappings shared by the OpenAI-family providers
    MODEL_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }
    DEFAULT_DIMENSIONS = 3072

    @property
    @abstractmethod
    def provider_id(self) -> str:
        """Stable identifier of the provider (part of every cache key)."""
        pass

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Number of dimensions in the embedding vector."""
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Name/identifier of the embedding model."""
        pass

    @abstractmethod
    async def embed_text(self, text: str) -> list[float]:
        """
        Generate embedding for a single text.

        Args:
            text: Text to embed

        Returns:
            Embedding vector as list of floats

        Raises:
            Exception: SDK errors are propagated unchanged for classification
        """
        pass

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for multiple texts in one request.

        Args:
            texts: List of texts to embed

        Returns:
            List of embedding vectors (same order as input texts)
        """
        pass

    @abstractmethod
    def is_configured(self) -> bool:
        """True when enough settings are present to attempt a request."""
        pass

    async def is_available(self) -> bool:
        """True when configured and a client can be constructed."""
        if not self.is_configured():
            return False
        try:
            await self._ensure_client()
        except Exception as e:
            logger.warning(f"{self.provider_id} provider unavailable: {e}")
            return False
        return True

    async def _ensure_client(self) -> object:
        """Create the underlying SDK client if needed."""
        return None

    @abstractmethod
    async def close(self) -> None:
        """Cleanup resources (close connections, release memory)."""
        pass

    @classmethod
    def resolve_dimensions(cls, model: str, dimensions: int | None) -> int:
        """Explicit dimensions win; otherwise auto-detect from the model name."""
        if dimensions is not None:
            return dimensions
        if model in cls.MODEL_DIMENSIONS:
            return cls.MODEL_DIMENSIONS[model]
        logger.warning(
            f"Unknown model '{model}', defaulting to {cls.DEFAULT_DIMENSIONS} dimensions. "
            f"Pass explicit dimensions parameter if different."
        )
        return cls.DEFAULT_DIMENSIONS

    @staticmethod
    def ordered_vectors(items: Sequence[Any], expected: int) -> list[list[float]]:
        """
        Response items as float lists in input order.

        Items carrying an integer ``index`` are placed by it; the others keep
        their response position.

        Raises:
            ValueError: If the response holds fewer or more vectors than inputs
        """
        if len(items) != expected:
            raise ValueError(
                f"Embedding generation incomplete: got {len(items)} vectors for {expected} inputs"
            )
        slots: list[list[float] | None] = [None] * expected
        for position, item in enumerate(items):
            index = getattr(item, "index", None)
            target = index if isinstance(index, int) and 0 <= index < expected else position
            if slots[target] is not None:
                target = position
            slots[target] = [float(x) for x in item.embedding]
        missing = [i for i, slot in enumerate(slots) if slot is None]
        if missing:
            raise ValueError(f"Embedding response has no vector for inputs {missing[:5]}")
        return slots  # type: ignore[return-value]

    async def __aenter__(self) -> EmbeddingProvider:
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        """Async context manager exit."""
        await self.close()

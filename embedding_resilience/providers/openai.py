"""
OpenAI embedding provider.

Calls the embeddings endpoint through the official SDK's ``AsyncOpenAI``
client. Also works with OpenAI-compatible servers via ``base_url``.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from openai import AsyncOpenAI

from .base import EmbeddingProvider

logger = logging.getLogger(__name__)

# ada-002 has a fixed width and rejects the dimensions parameter
_FIXED_WIDTH_MODELS = frozenset({"text-embedding-ada-002"})


class OpenAIEmbeddings(EmbeddingProvider):
    """Embeddings from the OpenAI API (text-embedding-3 family and ada-002)."""

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-large",
        dimensions: int | None = None,
        base_url: str | None = None,
        timeout: float = 30.0,
    ):
        """
        Args:
            api_key: OpenAI API key
            model: Embedding model name
            dimensions: Output dimensions, detected from the model when omitted
            base_url: Alternative endpoint for OpenAI-compatible servers
            timeout: Per-request timeout in seconds
        """
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self._dimensions = self.resolve_dimensions(model, dimensions)
        self._client: AsyncOpenAI | None = None

        logger.info(f"OpenAI embeddings configured: model={model} dimensions={self._dimensions}")

    @classmethod
    def from_env(cls) -> OpenAIEmbeddings:
        """
        Build the provider from ``OPENAI_*`` variables.

        ``OPENAI_API_KEY`` is required; ``OPENAI_EMBEDDING_MODEL``,
        ``OPENAI_EMBEDDING_DIMENSIONS``, ``OPENAI_BASE_URL`` and
        ``OPENAI_EMBEDDING_TIMEOUT`` are optional.

        Examples:
            export OPENAI_API_KEY="sk-..."
            export OPENAI_EMBEDDING_MODEL="text-embedding-3-small"
        """
        env = os.environ
        api_key = env.get("OPENAI_API_KEY")
        if not api_key:
            raise ValueError("OPENAI_API_KEY environment variable required")

        raw_dimensions = env.get("OPENAI_EMBEDDING_DIMENSIONS")
        return cls(
            api_key=api_key,
            model=env.get("OPENAI_EMBEDDING_MODEL", "text-embedding-3-large"),
            dimensions=int(raw_dimensions) if raw_dimensions else None,
            base_url=env.get("OPENAI_BASE_URL"),
            timeout=float(env.get("OPENAI_EMBEDDING_TIMEOUT", "30")),
        )

    @property
    def provider_id(self) -> str:
        return "openai"

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model_name(self) -> str:
        return self.model

    def is_configured(self) -> bool:
        return bool(self.api_key and self.model)

    async def _ensure_client(self) -> AsyncOpenAI:
        if self._client is None:
            # max_retries=0: retries belong to the resilient service
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._client

    def _request_kwargs(self) -> dict[str, Any]:
        if self.model in _FIXED_WIDTH_MODELS:
            return {"model": self.model}
        return {"model": self.model, "dimensions": self._dimensions}

    async def embed_text(self, text: str) -> list[float]:
        client = await self._ensure_client()
        response = await client.embeddings.create(input=text, **self._request_kwargs())
        return self.ordered_vectors(response.data, 1)[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed ``texts`` in one request; results follow the input order."""
        if not texts:
            return []
        client = await self._ensure_client()
        response = await client.embeddings.create(input=list(texts), **self._request_kwargs())
        return self.ordered_vectors(response.data, len(texts))

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.close()

"""
Azure OpenAI embedding provider.

Talks to an Azure OpenAI (or Foundry) embeddings deployment through the
``azure-ai-inference`` client. Authentication is either Entra ID via
``DefaultAzureCredential`` or a resource key.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from azure.ai.inference.aio import EmbeddingsClient
from azure.core.credentials import AzureKeyCredential
from azure.identity.aio import DefaultAzureCredential

from .base import EmbeddingProvider

logger = logging.getLogger(__name__)

_COGNITIVE_SERVICES_SCOPE = "https://cognitiveservices.azure.com/.default"

_TRUTHY = ("true", "1", "yes")


class AzureOpenAIEmbeddings(EmbeddingProvider):
    """
    Embeddings from an Azure OpenAI deployment.

    The deployment name routes the request; it defaults to the model name,
    which is the usual Azure convention.
    """

    def __init__(
        self,
        endpoint: str,
        model: str = "text-embedding-3-large",
        deployment: str | None = None,
        api_key: str | None = None,
        use_default_credential: bool = True,
        dimensions: int | None = None,
    ):
        """
        Args:
            endpoint: Resource URL or a full deployment URL
            model: Embedding model served by the deployment
            deployment: Deployment name, defaults to ``model``
            api_key: Resource key, used when ``use_default_credential`` is False
            use_default_credential: Authenticate with Entra ID (RBAC)
            dimensions: Output dimensions, detected from the model when omitted
        """
        self.endpoint = endpoint
        self.model = model
        self.deployment = deployment or model
        self.api_key = api_key
        self.use_default_credential = use_default_credential
        self._dimensions = self.resolve_dimensions(model, dimensions)
        self._credential: DefaultAzureCredential | None = None
        self._client: EmbeddingsClient | None = None

        logger.info(
            f"Azure OpenAI embeddings configured: deployment={self.deployment} "
            f"model={model} dimensions={self._dimensions} auth={self.auth_method}"
        )

    @classmethod
    def from_env(cls) -> AzureOpenAIEmbeddings:
        """
        Build the provider from ``AZURE_OPENAI_*`` variables.

        ``AZURE_OPENAI_ENDPOINT`` is required. ``AZURE_OPENAI_USE_RBAC``
        (default true) selects Entra ID; when it is false,
        ``AZURE_OPENAI_API_KEY`` must be set. Model, deployment and
        dimensions come from ``AZURE_OPENAI_EMBEDDING_MODEL``,
        ``AZURE_OPENAI_EMBEDDING_DEPLOYMENT`` and
        ``AZURE_OPENAI_EMBEDDING_DIMENSIONS``.

        Raises:
            ValueError: If the endpoint or a required key is missing
        """
        env = os.environ
        endpoint = env.get("AZURE_OPENAI_ENDPOINT")
        if not endpoint:
            raise ValueError("AZURE_OPENAI_ENDPOINT environment variable required")

        use_rbac = env.get("AZURE_OPENAI_USE_RBAC", "true").lower() in _TRUTHY
        api_key = env.get("AZURE_OPENAI_API_KEY")
        if not (use_rbac or api_key):
            raise ValueError("AZURE_OPENAI_API_KEY required when AZURE_OPENAI_USE_RBAC=false")

        raw_dimensions = env.get("AZURE_OPENAI_EMBEDDING_DIMENSIONS")
        return cls(
            endpoint=endpoint,
            model=env.get("AZURE_OPENAI_EMBEDDING_MODEL", "text-embedding-3-large"),
            deployment=env.get("AZURE_OPENAI_EMBEDDING_DEPLOYMENT"),
            api_key=api_key,
            use_default_credential=use_rbac,
            dimensions=int(raw_dimensions) if raw_dimensions else None,
        )

    @property
    def provider_id(self) -> str:
        return "azure_openai"

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model_name(self) -> str:
        return self.model

    @property
    def auth_method(self) -> str:
        return "rbac" if self.use_default_credential else "api_key"

    def is_configured(self) -> bool:
        return bool(self.endpoint) and (self.use_default_credential or bool(self.api_key))

    def _auth_kwargs(self) -> dict[str, Any]:
        if self.use_default_credential:
            self._credential = DefaultAzureCredential()
            return {"credential": self._credential, "credential_scopes": [_COGNITIVE_SERVICES_SCOPE]}
        if not self.api_key:
            raise ValueError("API key required when not using default credential")
        return {"credential": AzureKeyCredential(self.api_key)}

    async def _ensure_client(self) -> EmbeddingsClient:
        if self._client is None:
            # retry_total=0: retries belong to the resilient service
            self._client = EmbeddingsClient(
                endpoint=self.endpoint,
                model=self.deployment,
                retry_total=0,
                **self._auth_kwargs(),
            )
            logger.debug(f"Created Azure embeddings client ({self.auth_method})")
        return self._client

    async def _embed(self, inputs: list[str]) -> list[list[float]]:
        client = await self._ensure_client()
        response = await client.embed(input=inputs, dimensions=self._dimensions)
        return self.ordered_vectors(response.data, len(inputs))

    async def embed_text(self, text: str) -> list[float]:
        return (await self._embed([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return await self._embed(list(texts))

    async def close(self) -> None:
        """Close the client, then the credential it borrowed."""
        client, self._client = self._client, None
        credential, self._credential = self._credential, None
        if client is not None:
            await client.close()
        if credential is not None:
            await credential.close()

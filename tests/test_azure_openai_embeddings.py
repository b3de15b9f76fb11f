"""
Tests for Azure OpenAI embedding provider.

Uses mocking to avoid actual API calls during tests.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from embedding_resilience.providers.azure_openai import AzureOpenAIEmbeddings


class MockEmbeddingResponse:
    """Mock response from Azure OpenAI embeddings API."""

    def __init__(self, embeddings: list[list[float]]):
        self.data = [MagicMock(embedding=emb) for emb in embeddings]


def make_provider(**kwargs):
    kwargs.setdefault("endpoint", "https://test.openai.azure.com")
    kwargs.setdefault("api_key", "test-key")
    kwargs.setdefault("use_default_credential", False)
    return AzureOpenAIEmbeddings(**kwargs)


class TestAzureOpenAIEmbeddings:
    """Tests for Azure OpenAI embedding provider."""

    def test_initialization(self):
        """Provider initializes with correct configuration."""
        provider = make_provider(model="text-embedding-3-large")

        assert provider.endpoint == "https://test.openai.azure.com"
        assert provider.model == "text-embedding-3-large"
        assert provider.deployment == "text-embedding-3-large"
        assert provider.dimensions == 3072  # Auto-detected
        assert provider.provider_id == "azure_openai"
        assert provider.is_configured()

    def test_dimension_autodetection(self):
        """Dimensions are auto-detected based on model."""
        assert make_provider(model="text-embedding-3-small").dimensions == 1536
        assert make_provider(model="text-embedding-3-large").dimensions == 3072
        assert make_provider(model="text-embedding-ada-002").dimensions == 1536

    def test_explicit_dimensions(self):
        """Explicit dimensions override auto-detection."""
        provider = make_provider(model="custom-model", dimensions=2048)

        assert provider.dimensions == 2048

    def test_not_configured_without_key_or_rbac(self):
        provider = AzureOpenAIEmbeddings(
            endpoint="https://test.openai.azure.com", use_default_credential=False
        )

        assert not provider.is_configured()

    @pytest.mark.asyncio
    async def test_embed_text(self):
        """Single text embedding passes the configured dimensions."""
        provider = make_provider()
        mock_embedding = [0.1, 0.2, 0.3] * 1024  # 3072-d

        mock_client = AsyncMock()
        mock_client.embed = AsyncMock(return_value=MockEmbeddingResponse([mock_embedding]))

        with patch.object(provider, "_ensure_client", return_value=mock_client):
            result = await provider.embed_text("test text")

        assert result == mock_embedding
        mock_client.embed.assert_awaited_once_with(input=["test text"], dimensions=3072)

    @pytest.mark.asyncio
    async def test_no_provider_level_caching(self):
        """Every call reaches the API; caching happens above the provider."""
        provider = make_provider()

        mock_client = AsyncMock()
        mock_client.embed = AsyncMock(return_value=MockEmbeddingResponse([[0.5] * 3072]))

        with patch.object(provider, "_ensure_client", return_value=mock_client):
            await provider.embed_text("test text")
            await provider.embed_text("test text")

        assert mock_client.embed.call_count == 2

    @pytest.mark.asyncio
    async def test_embed_batch(self):
        """Batch embedding generation."""
        provider = make_provider()
        texts = ["text 1", "text 2", "text 3"]
        mock_embeddings = [[0.1] * 3072, [0.2] * 3072, [0.3] * 3072]

        mock_client = AsyncMock()
        mock_client.embed = AsyncMock(return_value=MockEmbeddingResponse(mock_embeddings))

        with patch.object(provider, "_ensure_client", return_value=mock_client):
            results = await provider.embed_batch(texts)

        assert results == mock_embeddings
        assert mock_client.embed.call_count == 1

    @pytest.mark.asyncio
    async def test_embed_batch_empty(self):
        provider = make_provider()

        assert await provider.embed_batch([]) == []

    @pytest.mark.asyncio
    async def test_incomplete_batch_raises(self):
        """A response with fewer vectors than inputs is an error."""
        provider = make_provider()

        mock_client = AsyncMock()
        mock_client.embed = AsyncMock(return_value=MockEmbeddingResponse([[0.1] * 3072]))

        with patch.object(provider, "_ensure_client", return_value=mock_client):
            with pytest.raises(ValueError, match="incomplete"):
                await provider.embed_batch(["a", "b"])

    @pytest.mark.asyncio
    async def test_sdk_errors_propagate(self):
        """SDK errors are not swallowed so they can be classified upstream."""
        provider = make_provider()

        mock_client = AsyncMock()
        mock_client.embed = AsyncMock(side_effect=ConnectionError("connection reset"))

        with patch.object(provider, "_ensure_client", return_value=mock_client):
            with pytest.raises(ConnectionError):
                await provider.embed_text("test")

    @pytest.mark.asyncio
    async def test_api_key_client_disables_sdk_retries(self):
        provider = make_provider()

        with patch(
            "embedding_resilience.providers.azure_openai.EmbeddingsClient"
        ) as client_cls:
            client = await provider._ensure_client()

        assert client is client_cls.return_value
        assert client_cls.call_args.kwargs["retry_total"] == 0
        assert client_cls.call_args.kwargs["model"] == "text-embedding-3-large"

    @pytest.mark.asyncio
    async def test_rbac_client_uses_default_credential(self):
        provider = make_provider(api_key=None, use_default_credential=True)

        with (
            patch("embedding_resilience.providers.azure_openai.EmbeddingsClient") as client_cls,
            patch(
                "embedding_resilience.providers.azure_openai.DefaultAzureCredential"
            ) as credential_cls,
        ):
            await provider._ensure_client()

        assert client_cls.call_args.kwargs["credential"] is credential_cls.return_value
        assert client_cls.call_args.kwargs["credential_scopes"] == [
            "https://cognitiveservices.azure.com/.default"
        ]

    @pytest.mark.asyncio
    async def test_close(self):
        """Close releases client and credential."""
        provider = make_provider()
        mock_client = AsyncMock()
        mock_credential = AsyncMock()
        provider._client = mock_client
        provider._credential = mock_credential

        await provider.close()

        mock_client.close.assert_awaited_once()
        mock_credential.close.assert_awaited_once()
        assert provider._client is None
        assert provider._credential is None


class TestFromEnv:
    def test_requires_endpoint(self, monkeypatch):
        monkeypatch.delenv("AZURE_OPENAI_ENDPOINT", raising=False)

        with pytest.raises(ValueError, match="AZURE_OPENAI_ENDPOINT"):
            AzureOpenAIEmbeddings.from_env()

    def test_api_key_required_without_rbac(self, monkeypatch):
        monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "https://test.openai.azure.com")
        monkeypatch.setenv("AZURE_OPENAI_USE_RBAC", "false")
        monkeypatch.delenv("AZURE_OPENAI_API_KEY", raising=False)

        with pytest.raises(ValueError, match="AZURE_OPENAI_API_KEY"):
            AzureOpenAIEmbeddings.from_env()

    def test_reads_settings(self, monkeypatch):
        monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "https://test.openai.azure.com")
        monkeypatch.setenv("AZURE_OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")
        monkeypatch.setenv("AZURE_OPENAI_EMBEDDING_DEPLOYMENT", "embeddings-prod")
        monkeypatch.setenv("AZURE_OPENAI_USE_RBAC", "true")
        monkeypatch.delenv("AZURE_OPENAI_EMBEDDING_DIMENSIONS", raising=False)

        provider = AzureOpenAIEmbeddings.from_env()

        assert provider.deployment == "embeddings-prod"
        assert provider.dimensions == 1536
        assert provider.use_default_credential is True

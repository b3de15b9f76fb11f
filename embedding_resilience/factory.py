"""
Wiring helpers that assemble the embedding stack from configuration.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from .cache import CacheStore, EmbeddingCache, MemoryCacheStore, SQLiteCacheConfig, SQLiteCacheStore
from .circuit_breaker import CircuitBreakerRegistry
from .config import CacheConfig, EmbeddingServiceConfig
from .dispatch import DispatchSelector
from .exceptions import ConfigurationError
from .orchestrator import ResilientEmbeddingService
from .providers import AzureOpenAIEmbeddings, EmbeddingProvider, OpenAIEmbeddings
from .queue import WorkQueue
from .recovery import CredentialRotator, RecoveryService
from .telemetry import LoggingTelemetrySink, TelemetrySink
from .worker import EmbeddingSink, EmbeddingWorker

logger = logging.getLogger(__name__)


def create_provider_from_env() -> EmbeddingProvider:
    """
    Pick a provider from the environment.

    OpenAI is used when ``OPENAI_API_KEY`` is set, otherwise Azure OpenAI
    when ``AZURE_OPENAI_ENDPOINT`` is set.

    Raises:
        ConfigurationError: If neither provider is configured
    """
    try:
        if os.environ.get("OPENAI_API_KEY"):
            return OpenAIEmbeddings.from_env()
        if os.environ.get("AZURE_OPENAI_ENDPOINT"):
            return AzureOpenAIEmbeddings.from_env()
    except ValueError as e:
        raise ConfigurationError("provider", str(e)) from e
    raise ConfigurationError(
        "provider", "set OPENAI_API_KEY or AZURE_OPENAI_ENDPOINT to select an embedding provider"
    )


async def create_cache_store(config: CacheConfig) -> CacheStore:
    if config.backend == "sqlite":
        return await SQLiteCacheStore.create(
            SQLiteCacheConfig(db_path=config.db_path, enable_compression=config.enable_compression)
        )
    return MemoryCacheStore()


@dataclass
class EmbeddingStack:
    """Every long-lived collaborator of one embedding deployment."""

    provider: EmbeddingProvider
    cache: EmbeddingCache
    circuits: CircuitBreakerRegistry
    service: ResilientEmbeddingService
    dispatcher: DispatchSelector
    recovery: RecoveryService
    worker: EmbeddingWorker | None = None

    async def close(self) -> None:
        await self.service.close()

    async def __aenter__(self) -> EmbeddingStack:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


async def build_embedding_stack(
    config: EmbeddingServiceConfig | None = None,
    provider: EmbeddingProvider | None = None,
    queue: WorkQueue | None = None,
    sink: EmbeddingSink | None = None,
    telemetry: TelemetrySink | None = None,
    credential_rotator: CredentialRotator | None = None,
) -> EmbeddingStack:
    """
    Build the full stack.

    Args:
        config: Stack configuration (defaults to ``EmbeddingServiceConfig.from_env()``)
        provider: Embedding provider (defaults to ``create_provider_from_env()``)
        queue: Work queue for deferred dispatch and index rebuilds
        sink: Storage side for the worker; no worker is built without one
        telemetry: Telemetry sink (defaults to logging)
        credential_rotator: Callable used by the rotate-credentials recovery

    Returns:
        Wired EmbeddingStack
    """
    config = config or EmbeddingServiceConfig.from_env()
    provider = provider or create_provider_from_env()
    telemetry = telemetry or LoggingTelemetrySink()

    store = await create_cache_store(config.cache)
    cache = EmbeddingCache(store, config.cache)
    circuits = CircuitBreakerRegistry(config.circuit, telemetry=telemetry)
    service = ResilientEmbeddingService(
        provider, cache=cache, circuits=circuits, config=config, telemetry=telemetry
    )
    dispatcher = DispatchSelector(service, queue=queue, config=config.dispatch)
    recovery = RecoveryService(
        service,
        cache=cache,
        queue=queue,
        circuits=circuits,
        config=config.recovery,
        credential_rotator=credential_rotator,
    )
    worker = EmbeddingWorker(service, sink) if sink is not None else None

    logger.info(
        f"Embedding stack ready: provider={provider.provider_id} model={provider.model_name} "
        f"cache={config.cache.backend} dispatch={'on' if config.dispatch.enabled else 'off'}"
    )
    return EmbeddingStack(
        provider=provider,
        cache=cache,
        circuits=circuits,
        service=service,
        dispatcher=dispatcher,
        recovery=recovery,
        worker=worker,
    )

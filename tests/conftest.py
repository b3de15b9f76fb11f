"""
Shared test configuration and fixtures.

Provides deterministic embedding providers (no API costs), a controllable
clock, and recording doubles for telemetry, notifications and the storage
sink.
"""

import hashlib
import logging

import pytest

from embedding_resilience.cache import EmbeddingCache, MemoryCacheStore
from embedding_resilience.circuit_breaker import CircuitBreakerRegistry
from embedding_resilience.config import (
    BatchConfig,
    CacheConfig,
    CircuitBreakerConfig,
    EmbeddingServiceConfig,
    RetryConfig,
)
from embedding_resilience.orchestrator import ResilientEmbeddingService
from embedding_resilience.providers import EmbeddingProvider

logger = logging.getLogger(__name__)


def deterministic_vector(text: str, dimensions: int) -> list[float]:
    """Stable, finite vector derived from the text's digest."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [digest[i % len(digest)] / 255.0 for i in range(dimensions)]


class MockEmbeddingProvider(EmbeddingProvider):
    """
    Mock embedding provider for testing without API costs.

    Generates deterministic embeddings based on text content and records
    every call it receives.
    """

    def __init__(self, dimensions: int = 8, model: str = "mock-embeddings"):
        self._dimensions = dimensions
        self._model_name = model
        self.single_calls: list[str] = []
        self.batch_calls: list[list[str]] = []
        self.closed = 0

    @property
    def provider_id(self) -> str:
        return "mock"

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def call_count(self) -> int:
        return len(self.single_calls) + len(self.batch_calls)

    def is_configured(self) -> bool:
        return True

    def vector_for(self, text: str) -> list[float]:
        return deterministic_vector(text, self._dimensions)

    async def embed_text(self, text: str) -> list[float]:
        self.single_calls.append(text)
        return self.vector_for(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.batch_calls.append(list(texts))
        return [self.vector_for(text) for text in texts]

    async def close(self) -> None:
        self.closed += 1


class FlakyEmbeddingProvider(MockEmbeddingProvider):
    """
    Mock provider with scripted failures.

    - ``failing_texts``: texts that always fail (single and batch calls)
    - ``fail_next``: number of upcoming calls that fail regardless of text
    - ``error_factory``: builds the exception raised on failure
    """

    def __init__(
        self,
        dimensions: int = 8,
        failing_texts: set[str] | None = None,
        fail_next: int = 0,
        error_factory=None,
    ):
        super().__init__(dimensions=dimensions)
        self.failing_texts = set(failing_texts or ())
        self.fail_next = fail_next
        self.error_factory = error_factory or (lambda: ConnectionError("connection refused"))

    def _maybe_fail(self, texts: list[str]) -> None:
        if self.fail_next > 0:
            self.fail_next -= 1
            raise self.error_factory()
        if self.failing_texts.intersection(texts):
            raise self.error_factory()

    async def embed_text(self, text: str) -> list[float]:
        self.single_calls.append(text)
        self._maybe_fail([text])
        return self.vector_for(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.batch_calls.append(list(texts))
        self._maybe_fail(texts)
        return [self.vector_for(text) for text in texts]


class HttpError(Exception):
    """SDK-style error carrying a status code and optional headers."""

    def __init__(self, status_code: int, message: str = "http error", headers=None):
        super().__init__(message)
        self.status_code = status_code
        self.response = type("Response", (), {"headers": headers or {}, "status_code": status_code})()


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingTelemetrySink:
    def __init__(self):
        self.events = []

    def __call__(self, event) -> None:
        self.events.append(event)

    def of_type(self, event_type):
        return [e for e in self.events if isinstance(e, event_type)]


class RecordingNotifier:
    def __init__(self):
        self.failures = []

    def __call__(self, failure) -> None:
        self.failures.append(failure)


class RecordingSink:
    """In-memory storage side for the worker."""

    def __init__(self):
        self.stored: dict[tuple[str, str, str], list[float]] = {}
        self.writes = 0
        self.rebuilds: list[tuple] = []

    async def store_embedding(self, server_id, collection_id, item_id, vector) -> None:
        self.writes += 1
        self.stored[(server_id, collection_id, item_id)] = vector

    async def rebuild_index(self, server_id, collection_id) -> None:
        self.rebuilds.append((server_id, collection_id))


class SleepRecorder:
    """No-op async sleep that remembers requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_config(
    max_retries: int = 0,
    failure_threshold: int = 5,
    max_batch_items: int = 10,
    individual_fallback: bool = True,
    enable_fallback: bool = True,
) -> EmbeddingServiceConfig:
    return EmbeddingServiceConfig(
        retry=RetryConfig(max_retries=max_retries, backoff_base=0.1, jitter=0.0),
        circuit=CircuitBreakerConfig(failure_threshold=failure_threshold, reset_timeout=60.0),
        cache=CacheConfig(cleanup_probability=0.0),
        batch=BatchConfig(
            max_batch_items=max_batch_items,
            individual_fallback=individual_fallback,
            individual_delay=0.0,
            enable_fallback=enable_fallback,
        ),
    )


def make_service(
    provider: EmbeddingProvider,
    config: EmbeddingServiceConfig | None = None,
    clock: FakeClock | None = None,
    telemetry=None,
    notifier=None,
    sleep=None,
) -> ResilientEmbeddingService:
    config = config or make_config()
    clock = clock or FakeClock()
    cache = EmbeddingCache(MemoryCacheStore(), config.cache, rand=lambda: 1.0)
    circuits = CircuitBreakerRegistry(config.circuit, clock=clock, telemetry=telemetry)
    return ResilientEmbeddingService(
        provider,
        cache=cache,
        circuits=circuits,
        config=config,
        telemetry=telemetry,
        notifier=notifier or RecordingNotifier(),
        sleep=sleep or SleepRecorder(),
        clock=clock,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_provider():
    return MockEmbeddingProvider(dimensions=8)


@pytest.fixture
def service(mock_provider, clock):
    return make_service(mock_provider, clock=clock)

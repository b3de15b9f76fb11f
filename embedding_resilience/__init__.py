"""
Embedding Resilience

Fault-tolerant embedding generation for semantic search.

Provides:
- Content-addressed embedding cache (in-memory or SQLite)
- Retry with exponential backoff and per-service circuit breakers
- Batch generation with partial-success reporting
- Synchronous or deferred (queued) dispatch
- Failure classification, bounded recovery and health checks

Usage:

    >>> from embedding_resilience import build_embedding_stack
    >>> async with await build_embedding_stack() as stack:
    ...     vector = await stack.service.generate_embedding("vector search")
    ...     vectors = await stack.service.generate_batch_embeddings(["a", "b", "c"])

Providers:

    # OpenAI direct
    from embedding_resilience.providers import OpenAIEmbeddings

    # Azure OpenAI (API key or RBAC)
    from embedding_resilience.providers import AzureOpenAIEmbeddings
"""

from .cache import CacheEntry, CacheStore, EmbeddingCache, EmbeddingMeta, make_cache_key
from .circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from .config import (
    BatchConfig,
    CacheConfig,
    CircuitBreakerConfig,
    DispatchConfig,
    EmbeddingServiceConfig,
    RecoveryConfig,
    RetryConfig,
)
from .dispatch import DispatchContext, DispatchResult, DispatchSelector, DispatchStatus
from .exceptions import (
    FAILURE_TAXONOMY,
    ConfigurationError,
    DegradationFailure,
    EmbeddingServiceError,
    FailureKind,
    Severity,
    classify_exception,
)
from .factory import EmbeddingStack, build_embedding_stack, create_provider_from_env
from .logging_utils import configure_structured_logging
from .orchestrator import ResilientEmbeddingService
from .providers import AzureOpenAIEmbeddings, EmbeddingProvider, OpenAIEmbeddings
from .queue import BatchWorkItem, InMemoryWorkQueue, RebuildWorkItem, WorkItem, WorkQueue
from .recovery import ErrorClassifier, HealthReport, HealthStatus, RecoveryService
from .resilience import BatchOutcome, retry_with_backoff
from .telemetry import CircuitTransitionEvent, LoggingTelemetrySink, ProviderCallEvent
from .worker import EmbeddingSink, EmbeddingWorker

__version__ = "0.1.0"

__all__ = [
    # Service
    "ResilientEmbeddingService",
    "EmbeddingStack",
    "build_embedding_stack",
    "create_provider_from_env",
    # Providers
    "EmbeddingProvider",
    "OpenAIEmbeddings",
    "AzureOpenAIEmbeddings",
    # Cache
    "EmbeddingCache",
    "CacheStore",
    "CacheEntry",
    "EmbeddingMeta",
    "make_cache_key",
    # Resilience
    "BatchOutcome",
    "retry_with_backoff",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Dispatch and deferred work
    "DispatchSelector",
    "DispatchContext",
    "DispatchResult",
    "DispatchStatus",
    "WorkQueue",
    "InMemoryWorkQueue",
    "WorkItem",
    "BatchWorkItem",
    "RebuildWorkItem",
    "EmbeddingWorker",
    "EmbeddingSink",
    # Recovery
    "ErrorClassifier",
    "RecoveryService",
    "HealthReport",
    "HealthStatus",
    # Errors
    "EmbeddingServiceError",
    "ConfigurationError",
    "DegradationFailure",
    "FailureKind",
    "Severity",
    "FAILURE_TAXONOMY",
    "classify_exception",
    # Configuration
    "EmbeddingServiceConfig",
    "RetryConfig",
    "CircuitBreakerConfig",
    "CacheConfig",
    "BatchConfig",
    "DispatchConfig",
    "RecoveryConfig",
    # Telemetry and logging
    "ProviderCallEvent",
    "CircuitTransitionEvent",
    "LoggingTelemetrySink",
    "configure_structured_logging",
]

"""
Configuration for the embedding service.

Each concern has its own dataclass with a ``from_env()`` constructor. Values
are validated in ``__post_init__`` so a bad environment fails at startup with
a ``ConfigurationError`` naming the offending field.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from .exceptions import ConfigurationError

_TRUE_VALUES = ("true", "1", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(name, f"expected a number, got {raw!r}") from e


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(name, f"expected an integer, got {raw!r}") from e


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in _TRUE_VALUES


def _require(condition: bool, field_name: str, reason: str) -> None:
    if not condition:
        raise ConfigurationError(field_name, reason)


@dataclass
class RetryConfig:
    """Configuration for retry with exponential backoff."""

    max_retries: int = 3
    backoff_base: float = 1.0  # seconds
    backoff_multiplier: float = 2.0
    backoff_max: float = 60.0  # cap
    jitter: float = 1.0  # upper bound of the random addition, seconds
    call_timeout: float = 30.0  # per provider call

    def __post_init__(self) -> None:
        _require(self.max_retries >= 0, "max_retries", "must be >= 0")
        _require(self.backoff_base >= 0, "backoff_base", "must be >= 0")
        _require(self.backoff_multiplier >= 1.0, "backoff_multiplier", "must be >= 1.0")
        _require(self.backoff_max >= self.backoff_base, "backoff_max", "must be >= backoff_base")
        _require(self.jitter >= 0, "jitter", "must be >= 0")
        _require(self.call_timeout > 0, "call_timeout", "must be > 0")

    @classmethod
    def from_env(cls) -> RetryConfig:
        return cls(
            max_retries=_env_int("EMBEDDING_MAX_RETRIES", 3),
            backoff_base=_env_float("EMBEDDING_BACKOFF_BASE", 1.0),
            backoff_multiplier=_env_float("EMBEDDING_BACKOFF_MULTIPLIER", 2.0),
            backoff_max=_env_float("EMBEDDING_BACKOFF_MAX", 60.0),
            jitter=_env_float("EMBEDDING_BACKOFF_JITTER", 1.0),
            call_timeout=_env_float("EMBEDDING_CALL_TIMEOUT", 30.0),
        )


@dataclass
class CircuitBreakerConfig:
    """Thresholds for the per-service circuit breakers."""

    failure_threshold: int = 5
    reset_timeout: float = 60.0  # seconds before a half-open probe
    reopen_multiplier: float = 2.0  # cool-down growth after a failed probe
    max_reset_timeout: float = 600.0

    def __post_init__(self) -> None:
        _require(self.failure_threshold >= 1, "failure_threshold", "must be >= 1")
        _require(self.reset_timeout > 0, "reset_timeout", "must be > 0")
        _require(self.reopen_multiplier >= 1.0, "reopen_multiplier", "must be >= 1.0")
        _require(
            self.max_reset_timeout >= self.reset_timeout,
            "max_reset_timeout",
            "must be >= reset_timeout",
        )

    @classmethod
    def from_env(cls) -> CircuitBreakerConfig:
        return cls(
            failure_threshold=_env_int("EMBEDDING_CIRCUIT_FAILURE_THRESHOLD", 5),
            reset_timeout=_env_float("EMBEDDING_CIRCUIT_RESET_TIMEOUT", 60.0),
            reopen_multiplier=_env_float("EMBEDDING_CIRCUIT_REOPEN_MULTIPLIER", 2.0),
            max_reset_timeout=_env_float("EMBEDDING_CIRCUIT_MAX_RESET_TIMEOUT", 600.0),
        )


@dataclass
class CacheConfig:
    """Embedding cache settings."""

    backend: str = "memory"  # "memory" or "sqlite"
    db_path: str | Path = ":memory:"
    default_ttl: float = 30 * 24 * 3600.0  # seconds
    max_entries: int = 100_000
    cleanup_probability: float = 0.01
    enable_compression: bool = True

    def __post_init__(self) -> None:
        _require(self.backend in ("memory", "sqlite"), "backend", "must be 'memory' or 'sqlite'")
        _require(self.default_ttl > 0, "default_ttl", "must be > 0")
        _require(self.max_entries >= 1, "max_entries", "must be >= 1")
        _require(
            0.0 <= self.cleanup_probability <= 1.0,
            "cleanup_probability",
            "must be between 0 and 1",
        )

    @classmethod
    def from_env(cls) -> CacheConfig:
        return cls(
            backend=os.environ.get("EMBEDDING_CACHE_BACKEND", "memory").lower(),
            db_path=os.environ.get("EMBEDDING_CACHE_PATH", ":memory:"),
            default_ttl=_env_float("EMBEDDING_CACHE_TTL", 30 * 24 * 3600.0),
            max_entries=_env_int("EMBEDDING_CACHE_MAX_ENTRIES", 100_000),
            cleanup_probability=_env_float("EMBEDDING_CACHE_CLEANUP_PROBABILITY", 0.01),
            enable_compression=_env_bool("EMBEDDING_CACHE_COMPRESSION", True),
        )


@dataclass
class BatchConfig:
    """Sub-batching limits and the per-item fallback policy.

    The numeric limits are provider specific; the defaults suit the
    OpenAI text-embedding-3 family.
    """

    max_batch_items: int = 10
    max_batch_tokens: int = 8191
    item_token_limit: int = 8192
    individual_fallback: bool = True
    individual_delay: float = 0.1  # seconds between single-item retries
    enable_fallback: bool = True  # near-duplicate lookup when the circuit is open

    def __post_init__(self) -> None:
        _require(self.max_batch_items >= 1, "max_batch_items", "must be >= 1")
        _require(self.max_batch_tokens >= 1, "max_batch_tokens", "must be >= 1")
        _require(self.item_token_limit >= 1, "item_token_limit", "must be >= 1")
        _require(self.individual_delay >= 0, "individual_delay", "must be >= 0")

    @classmethod
    def from_env(cls) -> BatchConfig:
        return cls(
            max_batch_items=_env_int("EMBEDDING_BATCH_MAX_ITEMS", 10),
            max_batch_tokens=_env_int("EMBEDDING_BATCH_MAX_TOKENS", 8191),
            item_token_limit=_env_int("EMBEDDING_ITEM_TOKEN_LIMIT", 8192),
            individual_fallback=_env_bool("EMBEDDING_BATCH_INDIVIDUAL_FALLBACK", True),
            individual_delay=_env_float("EMBEDDING_BATCH_INDIVIDUAL_DELAY", 0.1),
            enable_fallback=_env_bool("EMBEDDING_ENABLE_FALLBACK", True),
        )


@dataclass
class DispatchConfig:
    """Controls whether embedding work may be deferred to the work queue."""

    enabled: bool = False
    fallback_to_sync: bool = True
    opted_out_collections: frozenset[str] = field(default_factory=frozenset)
    queue_batch_size: int = 50

    def __post_init__(self) -> None:
        self.opted_out_collections = frozenset(self.opted_out_collections)
        _require(self.queue_batch_size >= 1, "queue_batch_size", "must be >= 1")

    @classmethod
    def from_env(cls) -> DispatchConfig:
        opted_out = os.environ.get("EMBEDDING_DISPATCH_OPTED_OUT", "")
        return cls(
            enabled=_env_bool("EMBEDDING_DISPATCH_ENABLED", False),
            fallback_to_sync=_env_bool("EMBEDDING_DISPATCH_FALLBACK_TO_SYNC", True),
            opted_out_collections=frozenset(c.strip() for c in opted_out.split(",") if c.strip()),
            queue_batch_size=_env_int("EMBEDDING_DISPATCH_QUEUE_BATCH_SIZE", 50),
        )


@dataclass
class RecoveryConfig:
    """Bounds for automatic recovery and health check thresholds."""

    max_attempts_per_hour: int = 5
    window: float = 3600.0
    health_check_ttl: float = 30.0
    latency_warning_ms: float = 500.0
    latency_critical_ms: float = 2000.0
    memory_warning_percent: float = 85.0
    memory_critical_percent: float = 95.0
    queue_depth_warning: int = 1000
    queue_depth_critical: int = 10_000

    def __post_init__(self) -> None:
        _require(self.max_attempts_per_hour >= 1, "max_attempts_per_hour", "must be >= 1")
        _require(self.window > 0, "window", "must be > 0")
        _require(self.health_check_ttl >= 0, "health_check_ttl", "must be >= 0")
        _require(
            self.latency_critical_ms >= self.latency_warning_ms,
            "latency_critical_ms",
            "must be >= latency_warning_ms",
        )
        _require(
            self.memory_critical_percent >= self.memory_warning_percent,
            "memory_critical_percent",
            "must be >= memory_warning_percent",
        )
        _require(
            self.queue_depth_critical >= self.queue_depth_warning,
            "queue_depth_critical",
            "must be >= queue_depth_warning",
        )

    @classmethod
    def from_env(cls) -> RecoveryConfig:
        return cls(
            max_attempts_per_hour=_env_int("EMBEDDING_RECOVERY_MAX_ATTEMPTS", 5),
            window=_env_float("EMBEDDING_RECOVERY_WINDOW", 3600.0),
            health_check_ttl=_env_float("EMBEDDING_HEALTH_CHECK_TTL", 30.0),
        )


@dataclass
class EmbeddingServiceConfig:
    """Aggregate configuration for the whole embedding stack."""

    retry: RetryConfig = field(default_factory=RetryConfig)
    circuit: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)

    @classmethod
    def from_env(cls) -> EmbeddingServiceConfig:
        """
        Create configuration from environment variables.

        All variables are optional and prefixed with ``EMBEDDING_``.

        Examples:
            export EMBEDDING_CACHE_BACKEND="sqlite"
            export EMBEDDING_CACHE_PATH="/var/lib/embeddings/cache.db"
            export EMBEDDING_CIRCUIT_FAILURE_THRESHOLD="5"
            export EMBEDDING_DISPATCH_ENABLED="true"
        """
        return cls(
            retry=RetryConfig.from_env(),
            circuit=CircuitBreakerConfig.from_env(),
            cache=CacheConfig.from_env(),
            batch=BatchConfig.from_env(),
            dispatch=DispatchConfig.from_env(),
            recovery=RecoveryConfig.from_env(),
        )

"""
Failure types for embedding generation.

All components raise ``DegradationFailure`` for anything a caller may need to
react to. The failure carries a ``FailureKind``; severity, retryability and
the fallback strategy are looked up from ``FAILURE_TAXONOMY`` rather than
being chosen at the raise site, so every kind is classified exactly once.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:
    from .resilience import BatchOutcome


class EmbeddingServiceError(Exception):
    """Base exception for all embedding service errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(EmbeddingServiceError):
    """Raised when configuration values are missing or out of range."""

    def __init__(self, field: str, reason: str):
        super().__init__(f"Invalid configuration for {field}: {reason}", {"field": field})
        self.field = field
        self.reason = reason


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class FailureKind(str, Enum):
    CONNECTION_LOST = "connection_lost"
    MEMORY_EXHAUSTED = "memory_exhausted"
    VECTOR_UNAVAILABLE = "vector_unavailable"
    RATE_LIMITED = "rate_limited"
    CACHE_DEGRADED = "cache_degraded"
    CONFIGURATION_INVALID = "configuration_invalid"
    PARTIAL_BATCH = "partial_batch"
    SERVICE_UNAVAILABLE = "service_unavailable"
    TEMPORARY_API_ERROR = "temporary_api_error"
    CIRCUIT_OPEN = "circuit_open"
    QUEUE_DEGRADED = "queue_degraded"
    CREDENTIALS_INVALID = "credentials_invalid"
    INVALID_INPUT = "invalid_input"
    VECTOR_INDEX_CORRUPTED = "vector_index_corrupted"


@dataclass(frozen=True)
class FailureProfile:
    """Fixed classification attached to a failure kind."""

    severity: Severity
    retryable: bool
    fallback_strategy: str
    hint: str  # machine-readable hint for the messaging layer


FAILURE_TAXONOMY: Mapping[FailureKind, FailureProfile] = MappingProxyType(
    {
        FailureKind.CONNECTION_LOST: FailureProfile(
            Severity.CRITICAL, True, "cache_fallback", "connection_lost"
        ),
        FailureKind.MEMORY_EXHAUSTED: FailureProfile(
            Severity.HIGH, False, "reduce_batch_size", "resources_exhausted"
        ),
        FailureKind.VECTOR_UNAVAILABLE: FailureProfile(
            Severity.MEDIUM, False, "text_search_fallback", "semantic_search_unavailable"
        ),
        FailureKind.RATE_LIMITED: FailureProfile(
            Severity.LOW, True, "rate_limit_backoff", "service_busy"
        ),
        FailureKind.CACHE_DEGRADED: FailureProfile(
            Severity.LOW, False, "direct_processing", "cache_degraded"
        ),
        FailureKind.CONFIGURATION_INVALID: FailureProfile(
            Severity.CRITICAL, False, "disable_feature", "configuration_invalid"
        ),
        FailureKind.PARTIAL_BATCH: FailureProfile(
            Severity.MEDIUM, True, "continue_with_partial_results", "partial_results"
        ),
        FailureKind.SERVICE_UNAVAILABLE: FailureProfile(
            Severity.HIGH, False, "text_search_only", "semantic_search_unavailable"
        ),
        FailureKind.TEMPORARY_API_ERROR: FailureProfile(
            Severity.MEDIUM, True, "retry_with_backoff", "service_busy"
        ),
        FailureKind.CIRCUIT_OPEN: FailureProfile(
            Severity.MEDIUM, False, "circuit_breaker_fallback", "semantic_search_paused"
        ),
        FailureKind.QUEUE_DEGRADED: FailureProfile(
            Severity.LOW, False, "synchronous_processing", "background_processing_delayed"
        ),
        FailureKind.CREDENTIALS_INVALID: FailureProfile(
            Severity.CRITICAL, False, "rotate_credentials", "configuration_invalid"
        ),
        FailureKind.INVALID_INPUT: FailureProfile(
            Severity.LOW, False, "skip_item", "content_not_embeddable"
        ),
        FailureKind.VECTOR_INDEX_CORRUPTED: FailureProfile(
            Severity.HIGH, False, "rebuild_index", "semantic_search_unavailable"
        ),
    }
)

_unclassified = set(FailureKind) - set(FAILURE_TAXONOMY)
if _unclassified:  # pragma: no cover
    raise RuntimeError(f"Failure kinds without a taxonomy entry: {sorted(_unclassified)}")


class DegradationFailure(EmbeddingServiceError):
    """Typed failure value understood by the orchestrator and recovery service.

    Attributes are read-only. ``outcome`` is only set for
    ``FailureKind.PARTIAL_BATCH`` and carries both the successful and the
    failed positions so callers can continue with partial results.
    """

    def __init__(
        self,
        kind: FailureKind,
        message: str | None = None,
        *,
        context: Mapping[str, Any] | None = None,
        cause: BaseException | None = None,
        outcome: BatchOutcome | None = None,
        retry_after: float | None = None,
    ):
        self._kind = FailureKind(kind)
        self._profile = FAILURE_TAXONOMY[self._kind]
        self._context = MappingProxyType(dict(context or {}))
        self._cause = cause
        self._outcome = outcome
        self._retry_after = retry_after
        text = message or f"{self._kind.value.replace('_', ' ')}"
        if cause is not None and message is None:
            text = f"{text}: {cause}"
        super().__init__(text, {"kind": self._kind.value, **self._context})
        if cause is not None:
            self.__cause__ = cause

    @property
    def kind(self) -> FailureKind:
        return self._kind

    @property
    def severity(self) -> Severity:
        return self._profile.severity

    @property
    def retryable(self) -> bool:
        return self._profile.retryable

    @property
    def fallback_strategy(self) -> str:
        return self._profile.fallback_strategy

    @property
    def hint(self) -> str:
        return self._profile.hint

    @property
    def context(self) -> Mapping[str, Any]:
        return self._context

    @property
    def cause(self) -> BaseException | None:
        return self._cause

    @property
    def outcome(self) -> BatchOutcome | None:
        return self._outcome

    @property
    def retry_after(self) -> float | None:
        return self._retry_after

    @property
    def should_log(self) -> bool:
        """Partial batches are only worth logging when most items failed."""
        if self._kind is FailureKind.PARTIAL_BATCH and self._outcome is not None:
            return len(self._outcome.failed) > self._outcome.total * 0.5
        return self._kind not in (FailureKind.CACHE_DEGRADED, FailureKind.VECTOR_UNAVAILABLE)

    def with_context(self, **extra: Any) -> DegradationFailure:
        """Return a copy carrying additional context."""
        return DegradationFailure(
            self._kind,
            self.message,
            context={**self._context, **extra},
            cause=self._cause,
            outcome=self._outcome,
            retry_after=self._retry_after,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self._kind.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "fallback_strategy": self.fallback_strategy,
            "hint": self.hint,
            "message": self.message,
            "context": dict(self._context),
        }
        if self._outcome is not None:
            data["successful"] = len(self._outcome.successful)
            data["failed"] = len(self._outcome.failed)
        if self._retry_after is not None:
            data["retry_after"] = self._retry_after
        return data


def extract_status_code(exc: BaseException) -> int | None:
    """Try to extract an HTTP status code from common SDK exceptions."""
    # Azure SDK: HttpResponseError
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    # OpenAI SDK: APIStatusError
    status = getattr(exc, "status", None)
    if isinstance(status, int):
        return status
    response = getattr(exc, "response", None)
    if response is not None:
        code = getattr(response, "status_code", None) or getattr(response, "status", None)
        if isinstance(code, int):
            return code
    return None


def extract_retry_after(exc: BaseException) -> float | None:
    """Extract a Retry-After header value from an exception if present."""
    response = getattr(exc, "response", None)
    if response is None:
        return None
    headers = getattr(response, "headers", None)
    if headers is None:
        return None
    retry_after = headers.get("Retry-After") or headers.get("retry-after")
    if retry_after is None:
        return None
    try:
        return float(retry_after)
    except (ValueError, TypeError):
        return None


_CONNECTION_ERROR_NAMES = frozenset(
    {"APIConnectionError", "ServiceRequestError", "ServiceResponseError", "ClientConnectorError"}
)
_TIMEOUT_ERROR_NAMES = frozenset({"APITimeoutError", "ReadTimeout", "ConnectTimeout"})

# (keyword, kind) pairs checked in order against the lower-cased message
_MESSAGE_RULES: tuple[tuple[str, FailureKind], ...] = (
    ("rate limit", FailureKind.RATE_LIMITED),
    ("too many requests", FailureKind.RATE_LIMITED),
    ("connection refused", FailureKind.CONNECTION_LOST),
    ("connection reset", FailureKind.CONNECTION_LOST),
    ("connection error", FailureKind.CONNECTION_LOST),
    ("could not connect", FailureKind.CONNECTION_LOST),
    ("timed out", FailureKind.TEMPORARY_API_ERROR),
    ("timeout", FailureKind.TEMPORARY_API_ERROR),
    ("temporary failure", FailureKind.TEMPORARY_API_ERROR),
    ("server overloaded", FailureKind.TEMPORARY_API_ERROR),
    ("api key", FailureKind.CREDENTIALS_INVALID),
    ("unauthorized", FailureKind.CREDENTIALS_INVALID),
    ("out of memory", FailureKind.MEMORY_EXHAUSTED),
    ("index corrupt", FailureKind.VECTOR_INDEX_CORRUPTED),
    ("vector", FailureKind.VECTOR_UNAVAILABLE),
    ("queue", FailureKind.QUEUE_DEGRADED),
    ("cache", FailureKind.CACHE_DEGRADED),
)


def classify_exception(
    exc: BaseException, context: Mapping[str, Any] | None = None
) -> DegradationFailure:
    """Convert an arbitrary exception into a ``DegradationFailure``.

    Already-classified failures are returned unchanged (with ``context``
    merged in). Unknown errors default to ``SERVICE_UNAVAILABLE``.
    """
    ctx = dict(context or {})
    if isinstance(exc, DegradationFailure):
        return exc.with_context(**ctx) if ctx else exc

    status = extract_status_code(exc)
    retry_after = extract_retry_after(exc)
    if status is not None:
        ctx.setdefault("status_code", status)

    kind = _kind_for(exc, status)
    return DegradationFailure(kind, context=ctx, cause=exc, retry_after=retry_after)


def _kind_for(exc: BaseException, status: int | None) -> FailureKind:
    if isinstance(exc, MemoryError):
        return FailureKind.MEMORY_EXHAUSTED

    if status is not None:
        if status == 429:
            return FailureKind.RATE_LIMITED
        if status in (401, 403):
            return FailureKind.CREDENTIALS_INVALID
        if status == 404:
            return FailureKind.CONFIGURATION_INVALID
        if status in (400, 413, 422):
            return FailureKind.INVALID_INPUT
        if status == 408 or 500 <= status <= 504:
            return FailureKind.TEMPORARY_API_ERROR

    name = type(exc).__name__
    if isinstance(exc, TimeoutError) or name in _TIMEOUT_ERROR_NAMES:
        return FailureKind.TEMPORARY_API_ERROR
    if isinstance(exc, (ConnectionError, OSError)) or name in _CONNECTION_ERROR_NAMES:
        return FailureKind.CONNECTION_LOST

    message = str(exc).lower()
    for keyword, kind in _MESSAGE_RULES:
        if keyword in message:
            return kind
    return FailureKind.SERVICE_UNAVAILABLE

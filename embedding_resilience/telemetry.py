"""
Telemetry events and degradation notifications.

The service only produces events; aggregation, persistence and rendering of
user-facing text belong to whoever implements the sink and notifier.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol, Union

from .exceptions import DegradationFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderCallEvent:
    """One call to the embedding provider."""

    operation: str  # "embed_text" or "embed_batch"
    provider_id: str
    model: str
    item_count: int
    token_count: int
    cost_estimate: float
    duration: float  # seconds
    outcome: str  # "success" or "failure"
    error_kind: str | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class CircuitTransitionEvent:
    """A circuit breaker moved from one state to another."""

    service_name: str
    from_state: str
    to_state: str
    consecutive_failures: int
    timestamp: float = field(default_factory=time.time)

    @property
    def state_transition(self) -> str:
        return f"{self.from_state}->{self.to_state}"


TelemetryEvent = Union[ProviderCallEvent, CircuitTransitionEvent]


class TelemetrySink(Protocol):
    def __call__(self, event: TelemetryEvent) -> None: ...


class DegradationNotifier(Protocol):
    def __call__(self, failure: DegradationFailure) -> None: ...


class NullTelemetrySink:
    """Discards every event."""

    def __call__(self, event: TelemetryEvent) -> None:
        return None


class LoggingTelemetrySink:
    """Writes events as structured log records (pair with StructuredJsonFormatter)."""

    def __init__(self, log: logging.Logger | None = None, level: int = logging.INFO):
        self._log = log or logging.getLogger("embedding_resilience.telemetry.events")
        self._level = level

    def __call__(self, event: TelemetryEvent) -> None:
        data: dict[str, Any] = asdict(event)
        if isinstance(event, CircuitTransitionEvent):
            data["state_transition"] = event.state_transition
            self._log.log(
                self._level,
                "CIRCUIT_TRANSITION: %s %s",
                event.service_name,
                event.state_transition,
                extra={"event_type": "circuit_transition", **data},
            )
        else:
            self._log.log(
                self._level,
                "PROVIDER_CALL: %s items=%d tokens=%d outcome=%s duration=%.3fs",
                event.operation,
                event.item_count,
                event.token_count,
                event.outcome,
                event.duration,
                extra={"event_type": "provider_call", **data},
            )


class LoggingDegradationNotifier:
    """Default notifier: logs the failure's machine-readable fields."""

    def __init__(self, log: logging.Logger | None = None):
        self._log = log or logging.getLogger("embedding_resilience.degradation")

    def __call__(self, failure: DegradationFailure) -> None:
        level = logging.WARNING if failure.should_log else logging.DEBUG
        self._log.log(
            level,
            "DEGRADED: kind=%s severity=%s fallback=%s hint=%s",
            failure.kind.value,
            failure.severity.value,
            failure.fallback_strategy,
            failure.hint,
            extra={"event_type": "degradation", "failure": failure.to_dict()},
        )


def safe_emit(sink: TelemetrySink | None, event: TelemetryEvent) -> None:
    """Deliver an event, never letting a broken sink affect the caller."""
    if sink is None:
        return
    try:
        sink(event)
    except Exception as e:
        logger.warning(f"Telemetry sink failed for {type(event).__name__}: {e}")


def safe_notify(notifier: DegradationNotifier | None, failure: DegradationFailure) -> None:
    """Deliver a degradation notice, absorbing notifier errors."""
    if notifier is None:
        return
    try:
        notifier(failure)
    except Exception as e:
        logger.warning(f"Degradation notifier failed for {failure.kind.value}: {e}")

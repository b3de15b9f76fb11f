"""Per-service circuit breakers for calls to external dependencies.

Each named service ("embedding_generation", "embedding_batch_generation",
...) has its own ``CircuitBreaker``. The registry owns the breakers, so two
registries never share state.

Transitions (state, outcome) -> state:

    CLOSED    + failure (threshold reached) -> OPEN
    CLOSED    + failure (below threshold)   -> CLOSED
    OPEN      + cool-down elapsed           -> HALF_OPEN (one probe admitted)
    HALF_OPEN + success                     -> CLOSED (counters reset)
    HALF_OPEN + failure                     -> OPEN (cool-down multiplied)
    OPEN      + late success/failure        -> OPEN (counters only)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, TypeVar

from .config import CircuitBreakerConfig
from .exceptions import DegradationFailure, FailureKind
from .telemetry import CircuitTransitionEvent, TelemetrySink, safe_emit

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]

# Failures caused by the request itself say nothing about the dependency's health
_NEUTRAL_KINDS = frozenset({FailureKind.INVALID_INPUT})


class CircuitState(Enum):
    CLOSED = "closed"  # Normal - requests flow through
    OPEN = "open"  # Tripped - requests fail fast
    HALF_OPEN = "half_open"  # Probing - one request allowed to test recovery


@dataclass(frozen=True)
class CircuitSnapshot:
    """Point-in-time view of one circuit. Times come from the breaker's clock."""

    service_name: str
    state: CircuitState
    consecutive_failures: int
    opened_at: float | None
    next_probe_at: float | None
    reset_timeout: float
    total_trips: int
    total_calls: int
    total_failures: int
    short_circuits: int

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


class CircuitBreaker:
    """Circuit breaker for one named service.

    Counters and timestamps are guarded by a lock so concurrent callers
    (tasks or threads) always observe a consistent state. Half-open admits
    exactly one probe: the probe slot is claimed under the lock in
    ``try_acquire`` and released by whichever ``record_*`` call settles it.
    """

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Clock = time.monotonic,
        on_transition: Callable[[CircuitTransitionEvent], None] | None = None,
        ignored_exceptions: tuple[type[BaseException], ...] = (),
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self.ignored_exceptions = ignored_exceptions
        self._clock = clock
        self._on_transition = on_transition
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: float | None = None
        self._reset_timeout = self.config.reset_timeout
        self._probe_in_flight = False

        self._total_trips = 0
        self._total_calls = 0
        self._total_failures = 0
        self._short_circuits = 0

    # -- state machine -------------------------------------------------------

    def _transition(self, new_state: CircuitState) -> CircuitTransitionEvent | None:
        """Change state; caller holds the lock."""
        if new_state is self._state:
            return None
        event = CircuitTransitionEvent(
            service_name=self.service_name,
            from_state=self._state.value,
            to_state=new_state.value,
            consecutive_failures=self._consecutive_failures,
        )
        self._state = new_state
        return event

    def _cooldown_elapsed(self) -> bool:
        return self._opened_at is not None and (
            self._clock() - self._opened_at >= self._reset_timeout
        )

    def _publish(self, event: CircuitTransitionEvent | None) -> None:
        if event is None:
            return
        if event.to_state == CircuitState.OPEN.value:
            logger.warning(
                "CIRCUIT_OPEN: %s after %d consecutive failures (trip #%d), "
                "will probe again in %.1fs",
                self.service_name,
                event.consecutive_failures,
                self._total_trips,
                self._reset_timeout,
            )
        elif event.to_state == CircuitState.HALF_OPEN.value:
            logger.info(f"Circuit {self.service_name} entering HALF_OPEN - allowing probe request")
        else:
            logger.info(f"Circuit {self.service_name} CLOSED - service recovered")
        if self._on_transition is not None:
            self._on_transition(event)

    @property
    def state(self) -> CircuitState:
        """Current state, moving OPEN to HALF_OPEN once the cool-down has elapsed."""
        with self._lock:
            event = None
            if self._state is CircuitState.OPEN and self._cooldown_elapsed():
                event = self._transition(CircuitState.HALF_OPEN)
            state = self._state
        self._publish(event)
        return state

    def try_acquire(self) -> bool:
        """Admit a call. Returns False when the call must short-circuit."""
        event = None
        with self._lock:
            if self._state is CircuitState.OPEN and self._cooldown_elapsed():
                event = self._transition(CircuitState.HALF_OPEN)

            if self._state is CircuitState.CLOSED:
                admitted = True
            elif self._state is CircuitState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                admitted = True
            else:
                admitted = False

            if admitted:
                self._total_calls += 1
            else:
                self._short_circuits += 1
        self._publish(event)
        return admitted

    def record_success(self) -> None:
        event = None
        with self._lock:
            self._consecutive_failures = 0
            if self._state is CircuitState.HALF_OPEN:
                self._probe_in_flight = False
                self._opened_at = None
                self._reset_timeout = self.config.reset_timeout
                event = self._transition(CircuitState.CLOSED)
        self._publish(event)

    def record_failure(self) -> None:
        event = None
        with self._lock:
            self._consecutive_failures += 1
            self._total_failures += 1
            if self._state is CircuitState.HALF_OPEN:
                self._probe_in_flight = False
                self._reset_timeout = min(
                    self._reset_timeout * self.config.reopen_multiplier,
                    self.config.max_reset_timeout,
                )
                self._opened_at = self._clock()
                self._total_trips += 1
                event = self._transition(CircuitState.OPEN)
            elif (
                self._state is CircuitState.CLOSED
                and self._consecutive_failures >= self.config.failure_threshold
            ):
                self._opened_at = self._clock()
                self._total_trips += 1
                event = self._transition(CircuitState.OPEN)
        self._publish(event)

    def release_probe(self) -> None:
        """Free the probe slot without judging the service (cancelled or ignored call)."""
        with self._lock:
            self._probe_in_flight = False

    def counts_as_failure(self, exc: BaseException) -> bool:
        if isinstance(exc, self.ignored_exceptions):
            return False
        if isinstance(exc, DegradationFailure) and exc.kind in _NEUTRAL_KINDS:
            return False
        return True

    def is_available(self) -> bool:
        """True when a call would not be rejected outright (does not claim the probe)."""
        with self._lock:
            if self._state is CircuitState.CLOSED:
                return True
            if self._state is CircuitState.HALF_OPEN:
                return not self._probe_in_flight
            return self._cooldown_elapsed()

    def reset(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._opened_at = None
            self._probe_in_flight = False
            self._reset_timeout = self.config.reset_timeout
            event = self._transition(CircuitState.CLOSED)
        self._publish(event)

    def force_open(self, duration: float | None = None) -> None:
        """Open the circuit now, optionally with a specific cool-down."""
        with self._lock:
            self._opened_at = self._clock()
            self._probe_in_flight = False
            if duration is not None:
                self._reset_timeout = duration
            self._total_trips += 1
            event = self._transition(CircuitState.OPEN)
        self._publish(event)

    def snapshot(self) -> CircuitSnapshot:
        state = self.state
        with self._lock:
            next_probe = (
                self._opened_at + self._reset_timeout
                if state is CircuitState.OPEN and self._opened_at is not None
                else None
            )
            return CircuitSnapshot(
                service_name=self.service_name,
                state=state,
                consecutive_failures=self._consecutive_failures,
                opened_at=self._opened_at,
                next_probe_at=next_probe,
                reset_timeout=self._reset_timeout,
                total_trips=self._total_trips,
                total_calls=self._total_calls,
                total_failures=self._total_failures,
                short_circuits=self._short_circuits,
            )


class CircuitBreakerRegistry:
    """Named circuit breakers plus the ``execute`` entry point."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Clock = time.monotonic,
        telemetry: TelemetrySink | None = None,
        ignored_exceptions: tuple[type[BaseException], ...] = (),
    ):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._telemetry = telemetry
        self._ignored_exceptions = ignored_exceptions
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def _emit(self, event: CircuitTransitionEvent) -> None:
        safe_emit(self._telemetry, event)

    def get(self, service_name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(service_name)
            if breaker is None:
                breaker = CircuitBreaker(
                    service_name,
                    config=self.config,
                    clock=self._clock,
                    on_transition=self._emit,
                    ignored_exceptions=self._ignored_exceptions,
                )
                self._breakers[service_name] = breaker
            return breaker

    async def execute(
        self,
        service_name: str,
        primary_fn: Callable[[], Awaitable[T]],
        fallback_fn: Callable[[BaseException], Any] | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> T:
        """
        Run ``primary_fn`` through the named circuit.

        Args:
            service_name: Circuit to use (created on first use)
            primary_fn: Zero-argument coroutine function doing the real work
            fallback_fn: Called with the failure when the circuit is open or
                the primary raised; may be sync or async, may re-raise
            context: Extra fields attached to the circuit-open failure

        Returns:
            Result of the primary, or of the fallback

        Raises:
            DegradationFailure: ``CIRCUIT_OPEN`` when open and no fallback
            Exception: The primary's exception when no fallback is given
        """
        breaker = self.get(service_name)

        if not breaker.try_acquire():
            snapshot = breaker.snapshot()
            failure = DegradationFailure(
                FailureKind.CIRCUIT_OPEN,
                f"Circuit breaker is OPEN for {service_name}",
                context={
                    "service_name": service_name,
                    "next_probe_at": snapshot.next_probe_at,
                    **dict(context or {}),
                },
            )
            logger.debug(f"Short-circuited call to {service_name}")
            if fallback_fn is None:
                raise failure
            return await _invoke_fallback(fallback_fn, failure)

        try:
            result = await primary_fn()
        except asyncio.CancelledError:
            breaker.release_probe()
            raise
        except Exception as exc:
            if breaker.counts_as_failure(exc):
                breaker.record_failure()
            else:
                breaker.release_probe()
            if fallback_fn is None:
                raise
            return await _invoke_fallback(fallback_fn, exc)

        breaker.record_success()
        return result

    def is_available(self, service_name: str) -> bool:
        return self.get(service_name).is_available()

    def stats(self, service_name: str) -> dict[str, Any]:
        return self.get(service_name).snapshot().to_dict()

    def all_stats(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.service_name: b.snapshot().to_dict() for b in breakers}

    def reset(self, service_name: str) -> None:
        self.get(service_name).reset()
        logger.info(f"Circuit {service_name} manually reset")

    def reset_all(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()

    def force_open(self, service_name: str, duration: float | None = None) -> None:
        self.get(service_name).force_open(duration)

    def open_circuits(self) -> list[str]:
        with self._lock:
            breakers = list(self._breakers.values())
        return [b.service_name for b in breakers if b.state is CircuitState.OPEN]


async def _invoke_fallback(fallback_fn: Callable[[BaseException], Any], exc: BaseException) -> Any:
    result = fallback_fn(exc)
    if inspect.isawaitable(result):
        result = await result
    return result

"""
Failure classification, bounded automatic recovery and health checks.

The recovery service holds no long-lived resources of its own. Every action
works through a collaborator (cache, queue, circuits, service) and is safe
to repeat; a sliding window per failure kind and context stops recovery
loops.
"""

from __future__ import annotations

import gc
import hashlib
import inspect
import json
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import psutil

from .cache import CacheEntry, EmbeddingCache
from .circuit_breaker import CircuitBreakerRegistry
from .config import RecoveryConfig
from .exceptions import (
    FAILURE_TAXONOMY,
    DegradationFailure,
    FailureKind,
    Severity,
    classify_exception,
)
from .orchestrator import BATCH_SERVICE, SINGLE_SERVICE, ResilientEmbeddingService
from .queue import RebuildWorkItem, WorkQueue

logger = logging.getLogger(__name__)

CredentialRotator = Callable[[], Awaitable[bool] | bool]

_HEALTH_CHECK_KEY = "__embedding_resilience_health_check__"


class ImpactScope(str, Enum):
    USER = "user"
    COLLECTION = "collection"
    SERVER = "server"
    SYSTEM = "system"


class NotificationLevel(str, Enum):
    NONE = "none"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class RecoveryStrategy(str, Enum):
    RECONNECT = "reconnect"
    REBUILD_INDEX = "rebuild_index"
    CLEAR_CACHE_AND_RETRY = "clear_cache_and_retry"
    REDUCE_BATCH_SIZE = "reduce_batch_size"
    RESTART_EXTERNAL_SERVICE = "restart_external_service"
    ROTATE_CREDENTIALS = "rotate_credentials"
    OPEN_CIRCUIT = "open_circuit"
    SCALE_RESOURCES = "scale_resources"
    ENTER_FALLBACK_MODE = "enter_fallback_mode"
    EMERGENCY_MAINTENANCE = "emergency_maintenance"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


_STATUS_RANK = {HealthStatus.HEALTHY: 0, HealthStatus.WARNING: 1, HealthStatus.CRITICAL: 2}


@dataclass(frozen=True)
class Classification:
    kind: FailureKind
    severity: Severity
    impact_scope: ImpactScope
    recovery_strategy: RecoveryStrategy | None
    notification_level: NotificationLevel
    escalation_required: bool


# kind -> (impact scope, recovery strategy, notification level, escalate)
_CLASSIFICATION_TABLE: dict[
    FailureKind, tuple[ImpactScope, RecoveryStrategy | None, NotificationLevel, bool]
] = {
    FailureKind.CONNECTION_LOST: (
        ImpactScope.SYSTEM, RecoveryStrategy.RECONNECT, NotificationLevel.ERROR, True
    ),
    FailureKind.MEMORY_EXHAUSTED: (
        ImpactScope.SERVER, RecoveryStrategy.SCALE_RESOURCES, NotificationLevel.WARNING, False
    ),
    FailureKind.VECTOR_UNAVAILABLE: (
        ImpactScope.COLLECTION, RecoveryStrategy.ENTER_FALLBACK_MODE, NotificationLevel.INFO, False
    ),
    FailureKind.RATE_LIMITED: (
        ImpactScope.SERVER, RecoveryStrategy.OPEN_CIRCUIT, NotificationLevel.NONE, False
    ),
    FailureKind.CACHE_DEGRADED: (
        ImpactScope.SERVER, RecoveryStrategy.CLEAR_CACHE_AND_RETRY, NotificationLevel.NONE, False
    ),
    FailureKind.CONFIGURATION_INVALID: (
        ImpactScope.SYSTEM, RecoveryStrategy.ENTER_FALLBACK_MODE, NotificationLevel.ERROR, True
    ),
    FailureKind.PARTIAL_BATCH: (
        ImpactScope.USER, RecoveryStrategy.REDUCE_BATCH_SIZE, NotificationLevel.INFO, False
    ),
    FailureKind.SERVICE_UNAVAILABLE: (
        ImpactScope.SYSTEM,
        RecoveryStrategy.RESTART_EXTERNAL_SERVICE,
        NotificationLevel.WARNING,
        False,
    ),
    FailureKind.TEMPORARY_API_ERROR: (
        ImpactScope.SERVER,
        RecoveryStrategy.RESTART_EXTERNAL_SERVICE,
        NotificationLevel.NONE,
        False,
    ),
    FailureKind.CIRCUIT_OPEN: (
        ImpactScope.SERVER, RecoveryStrategy.ENTER_FALLBACK_MODE, NotificationLevel.INFO, False
    ),
    FailureKind.QUEUE_DEGRADED: (
        ImpactScope.SERVER, None, NotificationLevel.INFO, False
    ),
    FailureKind.CREDENTIALS_INVALID: (
        ImpactScope.SYSTEM, RecoveryStrategy.ROTATE_CREDENTIALS, NotificationLevel.ERROR, True
    ),
    FailureKind.INVALID_INPUT: (
        ImpactScope.USER, None, NotificationLevel.NONE, False
    ),
    FailureKind.VECTOR_INDEX_CORRUPTED: (
        ImpactScope.COLLECTION, RecoveryStrategy.REBUILD_INDEX, NotificationLevel.WARNING, True
    ),
}

_unmapped = set(FailureKind) - set(_CLASSIFICATION_TABLE)
if _unmapped:  # pragma: no cover
    raise RuntimeError(f"Failure kinds without a recovery classification: {sorted(_unmapped)}")


class ErrorClassifier:
    """Maps failures to severity, impact and the recovery strategy to try."""

    def classify(self, failure: BaseException) -> Classification:
        failure = classify_exception(failure)
        scope, strategy, notification, escalate = _CLASSIFICATION_TABLE[failure.kind]
        return Classification(
            kind=failure.kind,
            severity=FAILURE_TAXONOMY[failure.kind].severity,
            impact_scope=scope,
            recovery_strategy=strategy,
            notification_level=notification,
            escalation_required=escalate,
        )


def make_recovery_id(kind: FailureKind, context: Mapping[str, Any] | None) -> str:
    document = {"kind": kind.value, "context": dict(context or {})}
    payload = json.dumps(document, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class RecoveryAttemptRecord:
    """Recent recovery attempts for one (failure kind, context) pair."""

    recovery_id: str
    kind: FailureKind
    timestamps: deque[float] = field(default_factory=deque)

    def prune(self, now: float, window: float) -> None:
        while self.timestamps and now - self.timestamps[0] >= window:
            self.timestamps.popleft()

    def allows(self, now: float, max_attempts: int, window: float) -> bool:
        self.prune(now, window)
        return len(self.timestamps) < max_attempts

    def record(self, now: float) -> None:
        self.timestamps.append(now)


@dataclass
class ComponentHealth:
    """Health status for a single component."""

    name: str
    status: HealthStatus
    message: str = ""
    latency_ms: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "latency_ms": self.latency_ms,
            "metadata": self.metadata,
        }


@dataclass
class HealthReport:
    status: HealthStatus
    checks: dict[str, ComponentHealth]
    recommendations: list[str]
    checked_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "checks": {name: check.to_dict() for name, check in self.checks.items()},
            "recommendations": list(self.recommendations),
            "checked_at": self.checked_at,
        }


class RecoveryService:
    """
    Executes recovery strategies with a bounded number of attempts and runs
    cached proactive health checks.
    """

    def __init__(
        self,
        service: ResilientEmbeddingService,
        cache: EmbeddingCache | None = None,
        queue: WorkQueue | None = None,
        circuits: CircuitBreakerRegistry | None = None,
        config: RecoveryConfig | None = None,
        credential_rotator: CredentialRotator | None = None,
        classifier: ErrorClassifier | None = None,
        clock: Callable[[], float] = time.monotonic,
        fallback_duration: float = 300.0,
    ):
        self.service = service
        self.cache = cache or service.cache
        self.queue = queue
        self.circuits = circuits or service.circuits
        self.config = config or RecoveryConfig()
        self.credential_rotator = credential_rotator
        self.classifier = classifier or ErrorClassifier()
        self.fallback_duration = fallback_duration
        self._clock = clock

        self._records: dict[str, RecoveryAttemptRecord] = {}
        self._attempts = 0
        self._successes = 0
        self._rate_limited = 0
        self._by_strategy: dict[str, int] = {}
        self._last_report: HealthReport | None = None

    # -- recovery ------------------------------------------------------------

    async def attempt_recovery(
        self, failure: BaseException, context: Mapping[str, Any] | None = None
    ) -> bool:
        """
        Try to heal the condition behind ``failure``.

        Args:
            failure: The failure (any exception is classified first)
            context: Identifies the affected scope; part of the attempt bound

        Returns:
            True if a recovery action ran and reported success
        """
        degradation = classify_exception(failure)
        classification = self.classifier.classify(degradation)
        strategy = classification.recovery_strategy
        if strategy is None:
            logger.debug(f"No recovery strategy for {degradation.kind.value}")
            return False

        ctx = dict(context or {})
        now = self._clock()
        recovery_id = make_recovery_id(degradation.kind, ctx)
        self._prune_records(now)
        record = self._records.setdefault(
            recovery_id, RecoveryAttemptRecord(recovery_id, degradation.kind)
        )
        if not record.allows(now, self.config.max_attempts_per_hour, self.config.window):
            self._rate_limited += 1
            logger.warning(
                "RECOVERY_LIMIT: %s reached %d attempts within %.0fs, not retrying",
                degradation.kind.value,
                self.config.max_attempts_per_hour,
                self.config.window,
            )
            return False
        record.record(now)

        succeeded = await self._run(strategy, degradation, ctx)
        if (
            not succeeded
            and classification.escalation_required
            and strategy is not RecoveryStrategy.EMERGENCY_MAINTENANCE
        ):
            logger.error(f"Recovery via {strategy.value} failed, escalating to emergency maintenance")
            succeeded = await self._run(RecoveryStrategy.EMERGENCY_MAINTENANCE, degradation, ctx)
        return succeeded

    def _prune_records(self, now: float) -> None:
        for recovery_id in list(self._records):
            record = self._records[recovery_id]
            record.prune(now, self.config.window)
            if not record.timestamps:
                del self._records[recovery_id]

    async def _run(
        self, strategy: RecoveryStrategy, failure: DegradationFailure, context: dict[str, Any]
    ) -> bool:
        self._attempts += 1
        self._by_strategy[strategy.value] = self._by_strategy.get(strategy.value, 0) + 1
        action = getattr(self, f"_recover_{strategy.value}")
        try:
            succeeded = bool(await action(failure, context))
        except Exception as e:
            logger.error(f"Recovery action {strategy.value} raised: {e}", exc_info=True)
            succeeded = False
        if succeeded:
            self._successes += 1
        logger.info(
            f"Recovery {strategy.value} for {failure.kind.value}: "
            f"{'succeeded' if succeeded else 'failed'}"
        )
        return succeeded

    async def _recover_reconnect(self, failure: DegradationFailure, context: dict) -> bool:
        await self.cache.reconnect()
        await self.cache.ping()
        return True

    async def _recover_rebuild_index(self, failure: DegradationFailure, context: dict) -> bool:
        if self.queue is None:
            logger.warning("Cannot schedule index rebuild: no work queue configured")
            return False
        await self.queue.enqueue(
            RebuildWorkItem(
                reason=failure.message,
                server_id=context.get("server_id"),
                collection_id=context.get("collection_id"),
            )
        )
        return True

    async def _recover_clear_cache_and_retry(self, failure: DegradationFailure, context: dict) -> bool:
        await self.cache.clear()
        await self.cache.ping()
        return True

    async def _recover_reduce_batch_size(self, failure: DegradationFailure, context: dict) -> bool:
        self.service.reduce_batch_size()
        return True

    async def _recover_restart_external_service(
        self, failure: DegradationFailure, context: dict
    ) -> bool:
        # Clients are created lazily, so closing forces a fresh one on next use
        await self.service.provider.close()
        return await self.service.provider.is_available()

    async def _recover_rotate_credentials(self, failure: DegradationFailure, context: dict) -> bool:
        if self.credential_rotator is None:
            logger.warning("Credentials invalid and no credential rotator configured")
            return False
        result = self.credential_rotator()
        if inspect.isawaitable(result):
            result = await result
        if not result:
            return False
        await self.service.provider.close()
        return True

    async def _recover_open_circuit(self, failure: DegradationFailure, context: dict) -> bool:
        for service_name in (SINGLE_SERVICE, BATCH_SERVICE):
            self.circuits.force_open(service_name, failure.retry_after)
        return True

    async def _recover_scale_resources(self, failure: DegradationFailure, context: dict) -> bool:
        collected = gc.collect()
        self.service.reduce_batch_size()
        logger.info(f"Released {collected} unreachable objects")
        return True

    async def _recover_enter_fallback_mode(self, failure: DegradationFailure, context: dict) -> bool:
        self.service.enter_fallback_mode(self.fallback_duration)
        return True

    async def _recover_emergency_maintenance(
        self, failure: DegradationFailure, context: dict
    ) -> bool:
        await self.cache.maintenance()
        for service_name in (SINGLE_SERVICE, BATCH_SERVICE):
            self.circuits.force_open(service_name)
        self.service.enter_fallback_mode(self.fallback_duration)
        return True

    def recovery_stats(self) -> dict[str, Any]:
        now = self._clock()
        self._prune_records(now)
        return {
            "attempts": self._attempts,
            "successes": self._successes,
            "success_rate": self._successes / self._attempts if self._attempts else 0.0,
            "rate_limited": self._rate_limited,
            "by_strategy": dict(self._by_strategy),
            "active_records": {
                rid: {"kind": rec.kind.value, "attempts_in_window": len(rec.timestamps)}
                for rid, rec in self._records.items()
            },
        }

    # -- health checks -------------------------------------------------------

    async def perform_health_check(self, force: bool = False) -> HealthReport:
        """
        Run the health check battery.

        The report is cached for ``health_check_ttl`` seconds unless ``force``.
        """
        now = self._clock()
        cached = self._last_report
        if (
            not force
            and cached is not None
            and now - cached.checked_at < self.config.health_check_ttl
        ):
            return cached

        checks = {
            check.name: check
            for check in (
                self._check_provider(),
                await self._check_connectivity(),
                self._check_memory(),
                await self._check_cache_round_trip(),
                await self._check_queue(),
                self._check_circuits(),
            )
        }
        status = max((c.status for c in checks.values()), key=_STATUS_RANK.__getitem__)
        report = HealthReport(
            status=status,
            checks=checks,
            recommendations=self._recommendations(checks),
            checked_at=now,
        )
        self._last_report = report

        if status is not HealthStatus.HEALTHY:
            logger.warning(f"Health check: {status.value}")
            for check in checks.values():
                if check.status is not HealthStatus.HEALTHY:
                    logger.warning(f"  {check.name}: {check.status.value} - {check.message}")
        return report

    def _latency_status(self, latency_ms: float) -> HealthStatus:
        if latency_ms >= self.config.latency_critical_ms:
            return HealthStatus.CRITICAL
        if latency_ms >= self.config.latency_warning_ms:
            return HealthStatus.WARNING
        return HealthStatus.HEALTHY

    def _check_provider(self) -> ComponentHealth:
        provider = self.service.provider
        if not provider.is_configured():
            return ComponentHealth("provider", HealthStatus.CRITICAL, "provider not configured")
        status = HealthStatus.WARNING if self.service.in_fallback_mode else HealthStatus.HEALTHY
        return ComponentHealth(
            "provider",
            status,
            "fallback mode active" if self.service.in_fallback_mode else "configured",
            metadata={"provider": provider.provider_id, "model": provider.model_name},
        )

    async def _check_connectivity(self) -> ComponentHealth:
        started = time.perf_counter()
        try:
            await self.cache.ping()
        except Exception as e:
            return ComponentHealth("connectivity", HealthStatus.CRITICAL, f"store unreachable: {e}")
        latency = (time.perf_counter() - started) * 1000
        return ComponentHealth(
            "connectivity", self._latency_status(latency), "store reachable", latency_ms=latency
        )

    def _check_memory(self) -> ComponentHealth:
        memory = psutil.virtual_memory()
        percent = float(memory.percent)
        if percent >= self.config.memory_critical_percent:
            status = HealthStatus.CRITICAL
        elif percent >= self.config.memory_warning_percent:
            status = HealthStatus.WARNING
        else:
            status = HealthStatus.HEALTHY
        return ComponentHealth(
            "memory",
            status,
            f"{percent:.1f}% used",
            metadata={"percent": percent, "available_mb": memory.available / (1024 * 1024)},
        )

    async def _check_cache_round_trip(self) -> ComponentHealth:
        store = self.cache.store
        wall = time.time()
        sentinel = CacheEntry(
            key=_HEALTH_CHECK_KEY,
            vector=[0.0, 0.0, 1.0],
            dimension=3,
            created_at=wall,
            last_accessed_at=wall,
            expires_at=wall + 60,
            metadata={"provider": "health_check"},
        )
        started = time.perf_counter()
        try:
            await store.upsert([sentinel])
            found = await store.fetch([_HEALTH_CHECK_KEY], wall)
            await store.delete([_HEALTH_CHECK_KEY])
        except Exception as e:
            return ComponentHealth("cache", HealthStatus.WARNING, f"cache round-trip failed: {e}")
        latency = (time.perf_counter() - started) * 1000
        if _HEALTH_CHECK_KEY not in found or found[_HEALTH_CHECK_KEY].vector != sentinel.vector:
            return ComponentHealth(
                "cache", HealthStatus.WARNING, "cache did not return the written entry", latency
            )
        return ComponentHealth("cache", self._latency_status(latency), "round-trip ok", latency)

    async def _check_queue(self) -> ComponentHealth:
        if self.queue is None:
            return ComponentHealth("queue", HealthStatus.HEALTHY, "no queue configured")
        try:
            depth = await self.queue.depth()
        except Exception as e:
            return ComponentHealth("queue", HealthStatus.WARNING, f"queue unavailable: {e}")
        if depth >= self.config.queue_depth_critical:
            status = HealthStatus.CRITICAL
        elif depth >= self.config.queue_depth_warning:
            status = HealthStatus.WARNING
        else:
            status = HealthStatus.HEALTHY
        return ComponentHealth("queue", status, f"{depth} items queued", metadata={"depth": depth})

    def _check_circuits(self) -> ComponentHealth:
        open_names = sorted(self.circuits.open_circuits())
        if open_names:
            return ComponentHealth(
                "circuits",
                HealthStatus.WARNING,
                f"open: {', '.join(open_names)}",
                metadata={"open": open_names},
            )
        return ComponentHealth("circuits", HealthStatus.HEALTHY, "all closed")

    def _recommendations(self, checks: dict[str, ComponentHealth]) -> list[str]:
        advice = {
            "provider": "verify_provider_configuration",
            "connectivity": "check_cache_store_connectivity",
            "memory": "reduce_batch_size",
            "cache": "clear_cache_and_retry",
            "queue": "scale_queue_workers",
            "circuits": "monitor_provider_recovery",
        }
        recommendations = [
            advice[name] for name, check in checks.items() if check.status is not HealthStatus.HEALTHY
        ]
        if sum(c.status is HealthStatus.CRITICAL for c in checks.values()) >= 2:
            recommendations.append("emergency_maintenance")
        return recommendations

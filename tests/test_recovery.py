"""Tests for failure classification, bounded recovery and health checks."""

from types import SimpleNamespace
from unittest.mock import patch

import pytest

from embedding_resilience.circuit_breaker import CircuitState
from embedding_resilience.config import RecoveryConfig
from embedding_resilience.exceptions import DegradationFailure, FailureKind, Severity
from embedding_resilience.orchestrator import BATCH_SERVICE, SINGLE_SERVICE
from embedding_resilience.queue import InMemoryWorkQueue, RebuildWorkItem, WorkItem
from embedding_resilience.recovery import (
    ErrorClassifier,
    HealthStatus,
    ImpactScope,
    NotificationLevel,
    RecoveryService,
    RecoveryStrategy,
    make_recovery_id,
)

from conftest import HttpError

MEMORY_PATH = "embedding_resilience.recovery.psutil.virtual_memory"


def memory(percent):
    return SimpleNamespace(percent=percent, available=4 * 1024 * 1024 * 1024)


def failure(kind, *args, **kwargs):
    return DegradationFailure(kind, *args, **kwargs)


@pytest.fixture
def recovery(service, clock):
    return RecoveryService(service, clock=clock)


class TestErrorClassifier:
    @pytest.mark.parametrize(
        "kind,strategy,scope",
        [
            (FailureKind.CONNECTION_LOST, RecoveryStrategy.RECONNECT, ImpactScope.SYSTEM),
            (FailureKind.MEMORY_EXHAUSTED, RecoveryStrategy.SCALE_RESOURCES, ImpactScope.SERVER),
            (FailureKind.RATE_LIMITED, RecoveryStrategy.OPEN_CIRCUIT, ImpactScope.SERVER),
            (FailureKind.PARTIAL_BATCH, RecoveryStrategy.REDUCE_BATCH_SIZE, ImpactScope.USER),
            (
                FailureKind.VECTOR_INDEX_CORRUPTED,
                RecoveryStrategy.REBUILD_INDEX,
                ImpactScope.COLLECTION,
            ),
            (FailureKind.QUEUE_DEGRADED, None, ImpactScope.SERVER),
            (FailureKind.INVALID_INPUT, None, ImpactScope.USER),
        ],
    )
    def test_table(self, kind, strategy, scope):
        classification = ErrorClassifier().classify(failure(kind))

        assert classification.kind is kind
        assert classification.recovery_strategy is strategy
        assert classification.impact_scope is scope

    def test_raw_exceptions_are_classified_first(self):
        classification = ErrorClassifier().classify(HttpError(401, "unauthorized"))

        assert classification.kind is FailureKind.CREDENTIALS_INVALID
        assert classification.severity is Severity.CRITICAL
        assert classification.notification_level is NotificationLevel.ERROR
        assert classification.escalation_required is True

    def test_every_kind_is_classified(self):
        classifier = ErrorClassifier()

        for kind in FailureKind:
            assert classifier.classify(failure(kind)).kind is kind


class TestRecoveryId:
    def test_stable_over_context_order(self):
        a = make_recovery_id(FailureKind.RATE_LIMITED, {"a": 1, "b": 2})
        b = make_recovery_id(FailureKind.RATE_LIMITED, {"b": 2, "a": 1})

        assert a == b
        assert a != make_recovery_id(FailureKind.CONNECTION_LOST, {"a": 1, "b": 2})
        assert a != make_recovery_id(FailureKind.RATE_LIMITED, {"a": 1})


class TestRecoveryStrategies:
    @pytest.mark.asyncio
    async def test_partial_batch_reduces_batch_size(self, recovery, service):
        before = service.batch_size

        assert await recovery.attempt_recovery(failure(FailureKind.PARTIAL_BATCH)) is True

        assert service.batch_size == max(1, before // 2)

    @pytest.mark.asyncio
    async def test_rate_limit_opens_circuits(self, recovery, service):
        assert await recovery.attempt_recovery(
            failure(FailureKind.RATE_LIMITED, retry_after=120.0)
        )

        assert service.circuits.get(SINGLE_SERVICE).state is CircuitState.OPEN
        assert service.circuits.get(BATCH_SERVICE).snapshot().reset_timeout == 120.0

    @pytest.mark.asyncio
    async def test_circuit_open_enters_fallback_mode(self, recovery, service, clock):
        assert await recovery.attempt_recovery(failure(FailureKind.CIRCUIT_OPEN))

        assert service.in_fallback_mode
        clock.advance(300)
        assert not service.in_fallback_mode

    @pytest.mark.asyncio
    async def test_index_corruption_schedules_rebuild(self, service, clock):
        queue = InMemoryWorkQueue()
        recovery = RecoveryService(service, queue=queue, clock=clock)

        ok = await recovery.attempt_recovery(
            failure(FailureKind.VECTOR_INDEX_CORRUPTED, "index checksum mismatch"),
            {"server_id": "s1", "collection_id": "c1"},
        )

        assert ok is True
        item = await queue.dequeue()
        assert isinstance(item, RebuildWorkItem)
        assert (item.server_id, item.collection_id) == ("s1", "c1")
        assert item.reason == "index checksum mismatch"

    @pytest.mark.asyncio
    async def test_cache_degraded_clears_cache(self, recovery, service):
        await service.generate_embedding("hello")

        assert await recovery.attempt_recovery(failure(FailureKind.CACHE_DEGRADED))

        assert (await service.cache.stats())["entries"] == 0

    @pytest.mark.asyncio
    async def test_connection_lost_reconnects(self, recovery):
        assert await recovery.attempt_recovery(ConnectionError("connection reset")) is True

    @pytest.mark.asyncio
    async def test_temporary_error_restarts_provider(self, recovery, mock_provider):
        assert await recovery.attempt_recovery(HttpError(503, "unavailable")) is True
        assert mock_provider.closed == 1

    @pytest.mark.asyncio
    async def test_memory_exhaustion_scales_resources(self, recovery, service):
        before = service.batch_size

        assert await recovery.attempt_recovery(MemoryError())

        assert service.batch_size < before

    @pytest.mark.asyncio
    async def test_no_strategy_for_invalid_input(self, recovery):
        assert await recovery.attempt_recovery(failure(FailureKind.INVALID_INPUT)) is False
        assert recovery.recovery_stats()["attempts"] == 0

    @pytest.mark.asyncio
    async def test_rotate_credentials(self, service, mock_provider, clock):
        calls = []

        async def rotator():
            calls.append(True)
            return True

        recovery = RecoveryService(service, credential_rotator=rotator, clock=clock)

        assert await recovery.attempt_recovery(failure(FailureKind.CREDENTIALS_INVALID))
        assert calls == [True]
        assert mock_provider.closed == 1
        assert not service.in_fallback_mode

    @pytest.mark.asyncio
    async def test_failed_rotation_escalates(self, recovery, service):
        """Without a rotator the escalation path runs emergency maintenance."""
        ok = await recovery.attempt_recovery(failure(FailureKind.CREDENTIALS_INVALID))

        assert ok is True
        assert service.in_fallback_mode
        assert set(service.circuits.open_circuits()) == {SINGLE_SERVICE, BATCH_SERVICE}
        assert recovery.recovery_stats()["by_strategy"] == {
            "rotate_credentials": 1,
            "emergency_maintenance": 1,
        }

    @pytest.mark.asyncio
    async def test_action_errors_are_reported_as_failure(self, service, clock):
        class BrokenQueue(InMemoryWorkQueue):
            async def enqueue(self, item):
                raise RuntimeError("broker down")

        recovery = RecoveryService(service, queue=BrokenQueue(), clock=clock)

        # rebuild fails, escalation then succeeds
        assert await recovery.attempt_recovery(failure(FailureKind.VECTOR_INDEX_CORRUPTED))
        stats = recovery.recovery_stats()
        assert stats["attempts"] == 2
        assert stats["successes"] == 1


class TestRecoveryBound:
    @pytest.mark.asyncio
    async def test_attempts_limited_per_window(self, recovery, clock, caplog):
        context = {"collection_id": "c1"}

        results = [
            await recovery.attempt_recovery(failure(FailureKind.PARTIAL_BATCH), context)
            for _ in range(6)
        ]

        assert results == [True] * 5 + [False]
        assert "RECOVERY_LIMIT" in caplog.text
        assert recovery.recovery_stats()["rate_limited"] == 1

        clock.advance(3600)
        assert await recovery.attempt_recovery(failure(FailureKind.PARTIAL_BATCH), context)

    @pytest.mark.asyncio
    async def test_bound_is_per_context(self, service, clock):
        recovery = RecoveryService(
            service, config=RecoveryConfig(max_attempts_per_hour=1), clock=clock
        )
        partial = failure(FailureKind.PARTIAL_BATCH)

        assert await recovery.attempt_recovery(partial, {"collection_id": "a"})
        assert not await recovery.attempt_recovery(partial, {"collection_id": "a"})
        assert await recovery.attempt_recovery(partial, {"collection_id": "b"})

    @pytest.mark.asyncio
    async def test_stats(self, recovery):
        await recovery.attempt_recovery(failure(FailureKind.PARTIAL_BATCH))

        stats = recovery.recovery_stats()

        assert stats["attempts"] == 1
        assert stats["success_rate"] == 1.0
        assert len(stats["active_records"]) == 1


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_healthy(self, recovery):
        with patch(MEMORY_PATH, return_value=memory(40.0)):
            report = await recovery.perform_health_check()

        assert report.status is HealthStatus.HEALTHY
        assert set(report.checks) == {
            "provider",
            "connectivity",
            "memory",
            "cache",
            "queue",
            "circuits",
        }
        assert report.recommendations == []
        assert report.to_dict()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_round_trip_leaves_no_trace(self, recovery, service):
        with patch(MEMORY_PATH, return_value=memory(40.0)):
            await recovery.perform_health_check()

        stats = await service.cache.stats()
        assert stats["entries"] == 0
        assert stats["hits"] == 0

    @pytest.mark.asyncio
    async def test_report_is_cached(self, recovery, clock):
        with patch(MEMORY_PATH, return_value=memory(40.0)) as vm:
            first = await recovery.perform_health_check()
            clock.advance(10)
            second = await recovery.perform_health_check()
            forced = await recovery.perform_health_check(force=True)
            clock.advance(30)
            expired = await recovery.perform_health_check()

        assert second is first
        assert forced is not first
        assert expired is not forced
        assert vm.call_count == 3

    @pytest.mark.asyncio
    async def test_memory_pressure(self, recovery):
        with patch(MEMORY_PATH, return_value=memory(90.0)):
            report = await recovery.perform_health_check()

        assert report.status is HealthStatus.WARNING
        assert report.checks["memory"].status is HealthStatus.WARNING
        assert report.recommendations == ["reduce_batch_size"]

    @pytest.mark.asyncio
    async def test_queue_depth(self, service, clock):
        queue = InMemoryWorkQueue()
        config = RecoveryConfig(queue_depth_warning=1, queue_depth_critical=2)
        recovery = RecoveryService(service, queue=queue, config=config, clock=clock)
        await queue.enqueue(WorkItem("s1", "c1", "i1", "a"))

        with patch(MEMORY_PATH, return_value=memory(40.0)):
            warning = await recovery.perform_health_check()
            await queue.enqueue(WorkItem("s1", "c1", "i2", "b"))
            critical = await recovery.perform_health_check(force=True)

        assert warning.checks["queue"].status is HealthStatus.WARNING
        assert critical.checks["queue"].status is HealthStatus.CRITICAL
        assert critical.status is HealthStatus.CRITICAL
        assert "scale_queue_workers" in critical.recommendations

    @pytest.mark.asyncio
    async def test_open_circuit_is_warning(self, recovery, service):
        service.circuits.force_open(SINGLE_SERVICE)

        with patch(MEMORY_PATH, return_value=memory(40.0)):
            report = await recovery.perform_health_check()

        assert report.checks["circuits"].status is HealthStatus.WARNING
        assert report.checks["circuits"].metadata["open"] == [SINGLE_SERVICE]
        assert "monitor_provider_recovery" in report.recommendations

    @pytest.mark.asyncio
    async def test_multiple_critical_checks_recommend_maintenance(self, service, clock):
        queue = InMemoryWorkQueue()
        config = RecoveryConfig(queue_depth_warning=0, queue_depth_critical=0)
        recovery = RecoveryService(service, queue=queue, config=config, clock=clock)

        with patch(MEMORY_PATH, return_value=memory(99.0)):
            report = await recovery.perform_health_check()

        assert report.status is HealthStatus.CRITICAL
        assert report.recommendations[-1] == "emergency_maintenance"

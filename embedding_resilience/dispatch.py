"""
Synchronous vs deferred dispatch of embedding work.

Deferral happens only when it is enabled, the call names a target the
worker can write back to, and the collection has not opted out. Everything
else runs inline through the resilient service.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .cache import make_cache_key, normalize_text
from .config import DispatchConfig
from .exceptions import DegradationFailure, FailureKind
from .logging_utils import EmbeddingLoggerAdapter, get_embedding_logger
from .orchestrator import ResilientEmbeddingService
from .queue import BatchWorkItem, WorkItem, WorkQueue, resolve_priority
from .resilience import Vector

logger = get_embedding_logger("dispatch")


class DispatchStatus(str, Enum):
    COMPLETED = "completed"
    QUEUED = "queued"
    SKIPPED = "skipped"
    DEGRADED = "degraded"


@dataclass
class DispatchContext:
    """Where a result belongs, so deferred work can be written back later."""

    server_id: str | None = None
    collection_id: str | None = None
    item_id: str | None = None
    item_ids: Sequence[str] | None = None  # aligned with the texts of a batch call
    priority: str | int = "normal"

    @property
    def has_target(self) -> bool:
        return bool(self.server_id and self.collection_id)

    def log_extra(self) -> dict[str, Any]:
        return {"server_id": self.server_id, "collection_id": self.collection_id}


@dataclass
class DispatchResult:
    status: DispatchStatus
    vector: Vector | None = None
    vectors: dict[int, Vector] = field(default_factory=dict)
    skipped: list[int] = field(default_factory=list)
    failure: DegradationFailure | None = None


class InFlightRegistry:
    """Content keys currently being processed by this dispatcher."""

    def __init__(self) -> None:
        self._keys: set[str] = set()
        self._lock = threading.Lock()

    def _try_add(self, key: str) -> bool:
        with self._lock:
            if key in self._keys:
                return False
            self._keys.add(key)
            return True

    def _release(self, key: str) -> None:
        with self._lock:
            self._keys.discard(key)

    @asynccontextmanager
    async def claim(self, key: str) -> AsyncIterator[bool]:
        """Yield True if ``key`` was claimed, False if someone else holds it.

        A successful claim is released when the block exits, whatever the
        outcome.
        """
        claimed = self._try_add(key)
        try:
            yield claimed
        finally:
            if claimed:
                self._release(key)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._keys

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)


class DispatchSelector:
    """Routes embedding calls to the resilient service or the work queue."""

    def __init__(
        self,
        service: ResilientEmbeddingService,
        queue: WorkQueue | None = None,
        config: DispatchConfig | None = None,
        in_flight: InFlightRegistry | None = None,
    ):
        self.service = service
        self.queue = queue
        self.config = config or DispatchConfig()
        self.in_flight = in_flight or InFlightRegistry()

    def should_defer(self, context: DispatchContext | None) -> bool:
        if not self.config.enabled or self.queue is None or context is None:
            return False
        if not context.has_target:
            return False
        return context.collection_id not in self.config.opted_out_collections

    # -- single text ---------------------------------------------------------

    async def generate_embedding(
        self, text: str, context: DispatchContext | None = None
    ) -> DispatchResult:
        if not text or not normalize_text(text):
            return DispatchResult(DispatchStatus.SKIPPED)

        ctx = context or DispatchContext()
        log = EmbeddingLoggerAdapter(logger, ctx.log_extra())
        key = make_cache_key(text, self.service.meta)

        async with self.in_flight.claim(key) as claimed:
            if not claimed:
                log.info("DISPATCH_SKIPPED: identical text already in flight")
                return DispatchResult(DispatchStatus.SKIPPED)

            if self.should_defer(ctx) and ctx.item_id:
                item = WorkItem(
                    server_id=ctx.server_id,
                    collection_id=ctx.collection_id,
                    item_id=ctx.item_id,
                    text=text,
                    priority=resolve_priority(ctx.priority),
                )
                failure = await self._enqueue(item, log)
                if failure is None:
                    return DispatchResult(DispatchStatus.QUEUED)
                if not self.config.fallback_to_sync:
                    return DispatchResult(DispatchStatus.DEGRADED, failure=failure)

            vector = await self.service.generate_embedding(text)
            if vector is None:
                return DispatchResult(DispatchStatus.DEGRADED)
            return DispatchResult(DispatchStatus.COMPLETED, vector=vector)

    # -- batches -------------------------------------------------------------

    async def generate_batch_embeddings(
        self, texts: Sequence[str], context: DispatchContext | None = None
    ) -> DispatchResult:
        """
        Embed or enqueue a batch.

        Texts already in flight elsewhere are reported in ``skipped``. A
        deferred batch needs ``context.item_ids`` aligned with ``texts``.
        """
        ctx = context or DispatchContext()
        log = EmbeddingLoggerAdapter(logger, ctx.log_extra())
        meta = self.service.meta

        async with AsyncExitStack() as stack:
            claimed: list[int] = []
            skipped: list[int] = []
            seen: dict[str, int] = {}
            for position, text in enumerate(texts):
                if not text or not normalize_text(text):
                    continue
                key = make_cache_key(text, meta)
                if key in seen:
                    claimed.append(position)
                    continue
                if await stack.enter_async_context(self.in_flight.claim(key)):
                    seen[key] = position
                    claimed.append(position)
                else:
                    skipped.append(position)

            if skipped:
                log.info(f"DISPATCH_SKIPPED: {len(skipped)} batch texts already in flight")
            if not claimed:
                return DispatchResult(DispatchStatus.SKIPPED, skipped=skipped)

            can_defer = (
                self.should_defer(ctx)
                and ctx.item_ids is not None
                and len(ctx.item_ids) == len(texts)
            )
            if can_defer:
                failure = await self._enqueue_batch(texts, claimed, ctx, log)
                if failure is None:
                    return DispatchResult(DispatchStatus.QUEUED, skipped=skipped)
                if not self.config.fallback_to_sync:
                    return DispatchResult(DispatchStatus.DEGRADED, skipped=skipped, failure=failure)

            return await self._run_batch(texts, claimed, skipped)

    async def _run_batch(
        self, texts: Sequence[str], claimed: list[int], skipped: list[int]
    ) -> DispatchResult:
        subset = [texts[p] for p in claimed]
        try:
            results = await self.service.generate_batch_embeddings(subset)
        except DegradationFailure as e:
            partial = e.outcome.successful if e.outcome is not None else {}
            return DispatchResult(
                DispatchStatus.DEGRADED,
                vectors={claimed[i]: v for i, v in partial.items()},
                skipped=skipped,
                failure=e,
            )
        return DispatchResult(
            DispatchStatus.COMPLETED,
            vectors={claimed[i]: v for i, v in results.items()},
            skipped=skipped,
        )

    async def _enqueue_batch(
        self,
        texts: Sequence[str],
        positions: list[int],
        ctx: DispatchContext,
        log: logging.LoggerAdapter,
    ) -> DegradationFailure | None:
        assert ctx.item_ids is not None
        size = self.config.queue_batch_size
        priority = resolve_priority(ctx.priority)
        for start in range(0, len(positions), size):
            chunk = positions[start : start + size]
            item = BatchWorkItem(
                server_id=ctx.server_id,
                collection_id=ctx.collection_id,
                items={ctx.item_ids[p]: texts[p] for p in chunk},
                priority=priority,
            )
            failure = await self._enqueue(item, log)
            if failure is not None:
                return failure
        return None

    async def _enqueue(
        self, item: WorkItem | BatchWorkItem, log: logging.LoggerAdapter
    ) -> DegradationFailure | None:
        try:
            await self.queue.enqueue(item)
        except Exception as e:
            failure = DegradationFailure(
                FailureKind.QUEUE_DEGRADED,
                f"Failed to enqueue embedding work: {e}",
                context={"collection_id": item.collection_id},
                cause=e,
            )
            log.warning(f"QUEUE_DEGRADED: {failure.message}")
            return failure
        log.debug(f"Queued {type(item).__name__} (priority {item.priority})")
        return None

    # -- direct processing and status ----------------------------------------

    async def process_synchronously(self, items: Mapping[str, str]) -> dict[str, Vector]:
        """Embed ``{item_id: text}`` inline, returning whatever succeeded."""
        item_ids = list(items)
        result = await self._run_batch([items[i] for i in item_ids], list(range(len(item_ids))), [])
        if result.failure is not None:
            logger.warning(
                f"Synchronous processing degraded: {len(result.vectors)}/{len(item_ids)} embedded"
            )
        return {item_ids[p]: v for p, v in result.vectors.items()}

    async def queue_status(self) -> dict[str, Any]:
        depth = None
        healthy = self.queue is not None
        if self.queue is not None:
            try:
                depth = await self.queue.depth()
            except Exception as e:
                healthy = False
                logger.warning(f"Queue depth unavailable: {e}")
        return {
            "enabled": self.config.enabled,
            "queue_configured": self.queue is not None,
            "queue_healthy": healthy,
            "depth": depth,
            "in_flight": len(self.in_flight),
            "fallback_to_sync": self.config.fallback_to_sync,
            "opted_out_collections": sorted(self.config.opted_out_collections),
        }

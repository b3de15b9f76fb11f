"""
Deferred embedding worker.

Re-enters the resilient service for queued work and hands the vectors to an
``EmbeddingSink``. Re-delivery is harmless: the second run is served from
the cache and the sink write is an upsert on the storage side.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Protocol

from .exceptions import DegradationFailure, FailureKind, classify_exception
from .logging_utils import EmbeddingLoggerAdapter, get_embedding_logger
from .orchestrator import ResilientEmbeddingService
from .queue import BatchWorkItem, QueueItem, RebuildWorkItem, WorkItem, WorkQueue
from .resilience import Vector

logger = get_embedding_logger("worker")


class EmbeddingSink(Protocol):
    """Storage side of deferred work."""

    async def store_embedding(
        self, server_id: str, collection_id: str, item_id: str, vector: Vector
    ) -> None: ...

    async def rebuild_index(self, server_id: str | None, collection_id: str | None) -> None: ...


class EmbeddingWorker:
    """Processes queued embedding work items."""

    def __init__(
        self,
        service: ResilientEmbeddingService,
        sink: EmbeddingSink,
        max_attempts: int = 3,
    ):
        self.service = service
        self.sink = sink
        self.max_attempts = max_attempts
        self._processed = 0
        self._stored = 0
        self._failed = 0

    async def process(self, item: QueueItem) -> int:
        """
        Process one work item.

        Args:
            item: Item taken from the queue

        Returns:
            Number of vectors written to the sink

        Raises:
            ValueError: If the item is malformed
            DegradationFailure: If embedding failed; for a partial batch the
                successful subset is stored first and ``context["failed_items"]``
                lists the item ids still missing
        """
        item.validate()
        self._processed += 1
        log = EmbeddingLoggerAdapter(
            logger, {"server_id": item.server_id, "collection_id": item.collection_id}
        )

        if isinstance(item, RebuildWorkItem):
            log.info(f"Rebuilding vector index: {item.reason}")
            await self.sink.rebuild_index(item.server_id, item.collection_id)
            return 0

        if isinstance(item, WorkItem):
            vector = await self.service.generate_embedding(item.text)
            if vector is None:
                raise DegradationFailure(
                    FailureKind.SERVICE_UNAVAILABLE,
                    f"No embedding produced for item {item.item_id}",
                    context={"item_id": item.item_id},
                )
            await self.sink.store_embedding(item.server_id, item.collection_id, item.item_id, vector)
            self._stored += 1
            return 1

        return await self._process_batch(item, log)

    async def _process_batch(self, item: BatchWorkItem, log: logging.LoggerAdapter) -> int:
        item_ids = list(item.items)
        texts = [item.items[item_id] for item_id in item_ids]
        try:
            vectors = await self.service.generate_batch_embeddings(texts)
        except DegradationFailure as e:
            if e.outcome is None:
                raise
            stored = await self._store_vectors(item, item_ids, e.outcome.successful)
            failed_ids = [item_ids[p] for p in sorted(e.outcome.failed)]
            log.warning(f"Stored {stored} vectors, {len(failed_ids)} items failed")
            raise e.with_context(failed_items=failed_ids)

        return await self._store_vectors(item, item_ids, vectors)

    async def _store_vectors(
        self, item: BatchWorkItem, item_ids: list[str], vectors: dict[int, Vector]
    ) -> int:
        for position, vector in vectors.items():
            await self.sink.store_embedding(
                item.server_id, item.collection_id, item_ids[position], vector
            )
        self._stored += len(vectors)
        return len(vectors)

    async def drain(self, queue: WorkQueue, max_items: int | None = None) -> dict[str, int]:
        """
        Process items until the queue is empty (or ``max_items`` were taken).

        Failed items are re-enqueued with an incremented attempt count until
        ``max_attempts``; for partial batches only the failed subset goes back.
        """
        taken = stored = failed = requeued = 0
        while max_items is None or taken < max_items:
            item = await queue.dequeue()
            if item is None:
                break
            taken += 1
            try:
                stored += await self.process(item)
            except ValueError as e:
                failed += 1
                self._failed += 1
                logger.error(f"Dropping malformed work item: {e}")
            except Exception as e:
                failed += 1
                self._failed += 1
                failure = classify_exception(e)
                retry_item = self._retry_item(item, failure)
                if retry_item is not None:
                    await queue.enqueue(retry_item)
                    requeued += 1
                else:
                    logger.error(
                        f"Giving up on {type(item).__name__} after {item.attempts + 1} attempts: "
                        f"{failure.kind.value}: {failure.message}"
                    )
        return {"processed": taken, "stored": stored, "failed": failed, "requeued": requeued}

    def _retry_item(self, item: QueueItem, failure: DegradationFailure) -> QueueItem | None:
        if item.attempts + 1 >= self.max_attempts:
            return None
        if isinstance(item, BatchWorkItem) and failure.outcome is not None:
            failed_ids = failure.context.get("failed_items") or []
            remaining = {i: item.items[i] for i in failed_ids if i in item.items}
            if not remaining:
                return None
            return replace(item, items=remaining, attempts=item.attempts + 1)
        return replace(item, attempts=item.attempts + 1)

    def stats(self) -> dict[str, Any]:
        return {"processed": self._processed, "stored": self._stored, "failed": self._failed}

"""
Deferred embedding work items and the work queue interface.

A real deployment plugs in its own job runtime behind ``WorkQueue``; the
in-memory queue serves tests and single-process deployments.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Union

from .exceptions import DegradationFailure, FailureKind

logger = logging.getLogger(__name__)

PRIORITY_HIGH = 50
PRIORITY_NORMAL = 100
PRIORITY_LOW = 200

PRIORITY_LEVELS = {"high": PRIORITY_HIGH, "normal": PRIORITY_NORMAL, "low": PRIORITY_LOW}


def resolve_priority(priority: str | int) -> int:
    """Map a priority name to its queue value; integers pass through."""
    if isinstance(priority, int):
        return priority
    try:
        return PRIORITY_LEVELS[priority.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown priority {priority!r}, expected one of {sorted(PRIORITY_LEVELS)}"
        ) from None


@dataclass
class WorkItem:
    """Embed one text and store it for (server, collection, item)."""

    server_id: str
    collection_id: str
    item_id: str
    text: str
    priority: int = PRIORITY_NORMAL
    attempts: int = 0
    enqueued_at: float = field(default_factory=time.time)

    def validate(self) -> None:
        if not (self.server_id and self.collection_id and self.item_id):
            raise ValueError("Work item requires server_id, collection_id and item_id")
        if not self.text or not self.text.strip():
            raise ValueError(f"Work item {self.item_id} has no text")


@dataclass
class BatchWorkItem:
    """Embed several texts of one collection, keyed by item id."""

    server_id: str
    collection_id: str
    items: dict[str, str]
    priority: int = PRIORITY_NORMAL
    attempts: int = 0
    enqueued_at: float = field(default_factory=time.time)

    def validate(self) -> None:
        if not (self.server_id and self.collection_id):
            raise ValueError("Batch work item requires server_id and collection_id")
        if not self.items:
            raise ValueError("Batch work item has no items")


@dataclass
class RebuildWorkItem:
    """Ask the storage side to rebuild its vector index."""

    reason: str
    server_id: str | None = None
    collection_id: str | None = None
    priority: int = PRIORITY_HIGH
    attempts: int = 0
    enqueued_at: float = field(default_factory=time.time)

    def validate(self) -> None:
        if not self.reason:
            raise ValueError("Rebuild work item requires a reason")


QueueItem = Union[WorkItem, BatchWorkItem, RebuildWorkItem]


class WorkQueue(ABC):
    """Deferred work queue with at-least-once delivery."""

    @abstractmethod
    async def enqueue(self, item: QueueItem) -> None:
        """Add an item. Raises if the queue cannot accept it."""
        pass

    @abstractmethod
    async def dequeue(self) -> QueueItem | None:
        """Next item by priority, or None when empty."""
        pass

    @abstractmethod
    async def depth(self) -> int:
        pass


class InMemoryWorkQueue(WorkQueue):
    """Priority queue on ``asyncio.PriorityQueue``.

    Lower priority values are served first; items of equal priority are
    served in enqueue order.
    """

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.PriorityQueue[tuple[int, int, QueueItem]] = asyncio.PriorityQueue(
            maxsize
        )
        self._sequence = itertools.count()

    async def enqueue(self, item: QueueItem) -> None:
        item.validate()
        try:
            self._queue.put_nowait((item.priority, next(self._sequence), item))
        except asyncio.QueueFull as e:
            raise DegradationFailure(
                FailureKind.QUEUE_DEGRADED,
                "Work queue is full",
                context={"depth": self._queue.qsize()},
                cause=e,
            ) from e
        logger.debug(f"Enqueued {type(item).__name__} with priority {item.priority}")

    async def dequeue(self) -> QueueItem | None:
        try:
            _, _, item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        return item

    async def depth(self) -> int:
        return self._queue.qsize()

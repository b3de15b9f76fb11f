"""Retry, backoff and batch splitting for embedding API calls.

``retry_with_backoff`` is the only place a provider call is repeated. It
bounds every attempt with a timeout, retries only failures the taxonomy marks
retryable, and raises a classified ``DegradationFailure`` once the budget is
spent.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Coroutine, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .config import RetryConfig
from .exceptions import DegradationFailure, FailureKind, classify_exception
from .tokens import count_tokens

logger = logging.getLogger(__name__)

T = TypeVar("T")

Vector = list[float]
SleepFn = Callable[[float], Awaitable[Any]]


@dataclass
class BatchOutcome:
    """Per-position result of a batch call.

    Every position in ``range(total)`` (or in ``positions`` when given) ends
    up in exactly one of ``successful`` and ``failed``. A success recorded
    after a failure for the same position wins.
    """

    positions: tuple[int, ...]
    successful: dict[int, Vector] = field(default_factory=dict)
    failed: dict[int, str] = field(default_factory=dict)

    @classmethod
    def for_positions(cls, positions: Sequence[int]) -> BatchOutcome:
        return cls(positions=tuple(positions))

    @property
    def total(self) -> int:
        return len(self.positions)

    def record_success(self, position: int, vector: Vector) -> None:
        self.failed.pop(position, None)
        self.successful[position] = vector

    def record_failure(self, position: int, reason: str) -> None:
        if position not in self.successful:
            self.failed[position] = reason

    def pending(self) -> list[int]:
        """Positions not yet accounted for."""
        return [p for p in self.positions if p not in self.successful and p not in self.failed]

    @property
    def is_complete(self) -> bool:
        return not self.pending()

    @property
    def all_failed(self) -> bool:
        return not self.successful and bool(self.failed)

    @property
    def success_rate(self) -> float:
        return len(self.successful) / self.total if self.total else 0.0


def compute_backoff_delay(
    attempt: int,
    config: RetryConfig,
    retry_after: float | None = None,
    previous_delay: float = 0.0,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay before retry number ``attempt + 1``.

    ``base * multiplier**attempt`` plus up to ``jitter`` seconds, or the
    provider's Retry-After when given; capped at ``backoff_max`` and never
    shorter than the previous delay.
    """
    if retry_after is not None:
        delay = retry_after
    else:
        delay = config.backoff_base * (config.backoff_multiplier**attempt)
        delay += rand() * config.jitter
    delay = min(delay, config.backoff_max)
    return max(delay, previous_delay)


async def retry_with_backoff(
    fn: Callable[..., Coroutine[Any, Any, T]],
    *args: Any,
    config: RetryConfig | None = None,
    context_msg: str = "",
    sleep: SleepFn = asyncio.sleep,
    **kwargs: Any,
) -> T:
    """Execute an async function with timeout, retry and backoff.

    Args:
        fn: Async callable to execute
        *args: Positional args for fn
        config: Retry configuration (uses defaults if None)
        context_msg: Extra context for log messages (e.g. operation name)
        sleep: Awaitable sleep used between attempts (injectable for tests)
        **kwargs: Keyword args for fn

    Returns:
        Result of fn

    Raises:
        DegradationFailure: Classified failure of the last attempt, raised
            immediately for non-retryable failures
    """
    cfg = config or RetryConfig()
    ctx = f" [{context_msg}]" if context_msg else ""
    attempts = cfg.max_retries + 1
    last_delay = 0.0

    for attempt in range(attempts):
        try:
            result = await asyncio.wait_for(fn(*args, **kwargs), timeout=cfg.call_timeout)
        except asyncio.TimeoutError as exc:
            failure = DegradationFailure(
                FailureKind.TEMPORARY_API_ERROR,
                f"Provider call timed out after {cfg.call_timeout:.1f}s",
                context={"timeout": cfg.call_timeout},
                cause=exc,
            )
        except Exception as exc:
            failure = classify_exception(exc)
        else:
            if attempt > 0:
                logger.warning(
                    "RETRY_RECOVERED: succeeded on attempt %d/%d after %d retries%s",
                    attempt + 1,
                    attempts,
                    attempt,
                    ctx,
                )
            return result

        status_code = failure.context.get("status_code")
        if not failure.retryable or attempt >= cfg.max_retries:
            logger.error(
                "RETRY_EXHAUSTED: attempt=%d/%d kind=%s retryable=%s%s: %s",
                attempt + 1,
                attempts,
                failure.kind.value,
                failure.retryable,
                ctx,
                failure.message,
            )
            raise failure.with_context(attempts=attempt + 1)

        delay = compute_backoff_delay(attempt, cfg, failure.retry_after, last_delay)
        last_delay = delay

        if failure.kind is FailureKind.RATE_LIMITED:
            logger.warning(
                "THROTTLED: status=%s attempt=%d/%d, retry_after=%.1fs%s: %s",
                status_code,
                attempt + 1,
                attempts,
                delay,
                ctx,
                failure.message,
            )
        else:
            logger.warning(
                "RETRYING: attempt=%d/%d status=%s delay=%.1fs%s: %s",
                attempt + 1,
                attempts,
                status_code,
                delay,
                ctx,
                failure.message,
            )
        await sleep(delay)

    raise RuntimeError("retry_with_backoff exhausted without raising")  # pragma: no cover


def split_into_batches(
    items: Sequence[tuple[int, str]],
    max_items: int,
    max_tokens: int,
    token_counter: Callable[[str], int] = count_tokens,
) -> list[list[tuple[int, str]]]:
    """Split ``(position, text)`` pairs into sub-batches.

    Each sub-batch holds at most ``max_items`` texts whose combined token
    count stays within ``max_tokens``. A single text larger than
    ``max_tokens`` is sent alone. Input order is preserved.
    """
    if max_items < 1:
        raise ValueError(f"max_items must be >= 1, got {max_items}")

    batches: list[list[tuple[int, str]]] = []
    current: list[tuple[int, str]] = []
    current_tokens = 0

    for position, text in items:
        tokens = token_counter(text)
        if current and (len(current) >= max_items or current_tokens + tokens > max_tokens):
            batches.append(current)
            current = []
            current_tokens = 0
        current.append((position, text))
        current_tokens += tokens

    if current:
        batches.append(current)
    return batches

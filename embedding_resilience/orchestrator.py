"""
Resilient embedding service.

The facade callers use instead of talking to a provider directly. Every
request goes cache first; misses go through a named circuit breaker whose
primary retries with backoff. Failures degrade to ``None`` (single texts) or
to a ``DegradationFailure`` carrying a ``BatchOutcome`` (batches), so the
embedding layer never takes a search request down with it.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import string
import time
from collections.abc import Callable, Sequence
from typing import Any

from .cache import EmbeddingCache, EmbeddingMeta, MemoryCacheStore, make_cache_key, normalize_text
from .circuit_breaker import CircuitBreakerRegistry
from .config import EmbeddingServiceConfig
from .exceptions import DegradationFailure, FailureKind, classify_exception
from .providers import EmbeddingProvider
from .resilience import BatchOutcome, SleepFn, Vector, retry_with_backoff, split_into_batches
from .telemetry import (
    DegradationNotifier,
    LoggingDegradationNotifier,
    ProviderCallEvent,
    TelemetrySink,
    safe_emit,
    safe_notify,
)
from .tokens import count_tokens, estimate_cost, truncate_to_tokens

logger = logging.getLogger(__name__)

SINGLE_SERVICE = "embedding_generation"
BATCH_SERVICE = "embedding_batch_generation"

_TRIM_CHARS = string.punctuation + string.whitespace


class ResilientEmbeddingService:
    """
    Cache-first, circuit-guarded, retrying embedding generation.

    All collaborators are injected. Instances share nothing with each other:
    the in-flight table and the circuit registry belong to the instance (or to
    whoever passed the registry in).
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: EmbeddingCache | None = None,
        circuits: CircuitBreakerRegistry | None = None,
        config: EmbeddingServiceConfig | None = None,
        telemetry: TelemetrySink | None = None,
        notifier: DegradationNotifier | None = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.config = config or EmbeddingServiceConfig()
        self.cache = cache or EmbeddingCache(MemoryCacheStore(), self.config.cache)
        self.circuits = circuits or CircuitBreakerRegistry(self.config.circuit, telemetry=telemetry)
        self._telemetry = telemetry
        self._notifier = notifier if notifier is not None else LoggingDegradationNotifier()
        self._sleep = sleep
        self._clock = clock

        self._in_flight: dict[str, asyncio.Future[Vector | None]] = {}
        self._batch_items = self.config.batch.max_batch_items
        self._fallback_until: float | None = None

        self._provider_calls = 0
        self._provider_failures = 0
        self._items_generated = 0
        self._fallbacks_served = 0
        self._degraded_responses = 0

    @property
    def meta(self) -> EmbeddingMeta:
        return EmbeddingMeta(
            provider=self.provider.provider_id,
            model=self.provider.model_name,
            dimension=self.provider.dimensions,
        )

    # -- single text ---------------------------------------------------------

    async def generate_embedding(self, text: str) -> Vector | None:
        """
        Embedding for ``text``, or None when the caller should continue
        without semantic search.

        Concurrent calls for the same text share one provider call.
        """
        if not text or not normalize_text(text):
            return None

        meta = self.meta
        key = make_cache_key(text, meta)

        pending = self._in_flight.get(key)
        if pending is not None:
            logger.debug("Joining in-flight embedding request")
            return await asyncio.shield(pending)

        future: asyncio.Future[Vector | None] = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            result = await self.cache.get(text, meta)
            if result is None:
                result = await self._generate_uncached(text, meta)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            future.exception()  # mark retrieved when nobody joined
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._in_flight.pop(key, None)

    async def _generate_uncached(self, text: str, meta: EmbeddingMeta) -> Vector | None:
        context = {"operation": "single_embedding", "text_length": len(text)}

        if self.in_fallback_mode:
            failure = DegradationFailure(
                FailureKind.SERVICE_UNAVAILABLE, "Fallback mode active", context=context
            )
            return await self._handle_embedding_failure(text, meta, failure)

        async def primary() -> Vector:
            vector = await retry_with_backoff(
                self._call_provider_single,
                text,
                config=self.config.retry,
                context_msg=SINGLE_SERVICE,
                sleep=self._sleep,
            )
            await self.cache.set(text, vector, meta)
            return vector

        async def fallback(exc: BaseException) -> Vector | None:
            return await self._handle_embedding_failure(
                text, meta, classify_exception(exc, context)
            )

        return await self.circuits.execute(SINGLE_SERVICE, primary, fallback, context)

    async def _handle_embedding_failure(
        self, text: str, meta: EmbeddingMeta, failure: DegradationFailure
    ) -> Vector | None:
        if self.config.batch.enable_fallback:
            substitute = await self._near_duplicate(text, meta)
            if substitute is not None:
                self._fallbacks_served += 1
                logger.info("Using fallback embedding for failed generation")
                return substitute

        self._degraded_responses += 1
        logger.warning(
            f"Embedding generation failed, no fallback available: "
            f"{failure.kind.value}: {failure.message}"
        )
        safe_notify(self._notifier, failure)
        return None

    async def _near_duplicate(self, text: str, meta: EmbeddingMeta) -> Vector | None:
        """A cached vector for a trivially different spelling of ``text``."""
        original = normalize_text(text)
        variants = []
        for candidate in (text.casefold(), text.strip(_TRIM_CHARS), text.casefold().strip(_TRIM_CHARS)):
            normalized = normalize_text(candidate)
            if normalized and normalized != original and candidate not in variants:
                variants.append(candidate)
        if not variants:
            return None
        hits = await self.cache.get_multiple(variants, meta)
        for candidate in variants:
            if candidate in hits:
                return hits[candidate]
        return None

    async def _call_provider_single(self, text: str) -> Vector:
        prepared = truncate_to_tokens(text, self.config.batch.item_token_limit)
        tokens = count_tokens(prepared)
        started = self._clock()
        try:
            vector = await self.provider.embed_text(prepared)
            if not vector:
                raise DegradationFailure(
                    FailureKind.SERVICE_UNAVAILABLE, "Embedding service returned empty result"
                )
        except Exception as exc:
            self._record_call("embed_text", 1, tokens, started, exc)
            raise
        self._record_call("embed_text", 1, tokens, started)
        self._items_generated += 1
        return list(vector)

    # -- batches -------------------------------------------------------------

    async def generate_batch_embeddings(self, texts: Sequence[str]) -> dict[int, Vector]:
        """
        Embeddings for many texts, keyed by input position.

        Blank texts are skipped. Cached texts cost nothing, duplicate texts
        are requested once, and every successful item is cached as soon as
        its sub-batch completes.

        Returns:
            ``{position: vector}`` when every non-blank text succeeded

        Raises:
            DegradationFailure: ``PARTIAL_BATCH`` with ``outcome`` when some
                items failed, ``SERVICE_UNAVAILABLE`` when all of them did
        """
        positions = [i for i, text in enumerate(texts) if text and normalize_text(text)]
        if not positions:
            return {}

        meta = self.meta
        outcome = BatchOutcome.for_positions(positions)

        cached = await self.cache.get_multiple([texts[i] for i in positions], meta)
        for position in positions:
            vector = cached.get(texts[position])
            if vector is not None:
                outcome.record_success(position, vector)

        # one provider input per distinct cache key
        groups: dict[int, list[int]] = {}
        first_by_key: dict[str, int] = {}
        for position in outcome.pending():
            key = make_cache_key(texts[position], meta)
            first = first_by_key.setdefault(key, position)
            groups.setdefault(first, []).append(position)

        if groups:
            if self.in_fallback_mode:
                for first in groups:
                    self._record_group(outcome, groups[first], reason="fallback mode active")
            else:
                await self._process_misses(texts, groups, meta, outcome)

        return self._finish_batch(outcome, len(texts))

    async def _process_misses(
        self,
        texts: Sequence[str],
        groups: dict[int, list[int]],
        meta: EmbeddingMeta,
        outcome: BatchOutcome,
    ) -> None:
        limit = self.config.batch.item_token_limit
        requests = [(first, truncate_to_tokens(texts[first], limit)) for first in groups]
        batches = split_into_batches(requests, self._batch_items, self.config.batch.max_batch_tokens)

        for batch in batches:
            context = {"operation": "batch_embedding", "batch_size": len(batch)}
            result = await self.circuits.execute(
                BATCH_SERVICE,
                functools.partial(
                    retry_with_backoff,
                    self._call_provider_batch,
                    [text for _, text in batch],
                    config=self.config.retry,
                    context_msg=BATCH_SERVICE,
                    sleep=self._sleep,
                ),
                lambda exc, ctx=context: classify_exception(exc, ctx),
                context,
            )

            if isinstance(result, DegradationFailure):
                await self._individual_fallback(texts, batch, groups, meta, outcome, result)
                continue

            fresh: dict[str, Vector] = {}
            for (first, _), vector in zip(batch, result):
                if vector:
                    self._record_group(outcome, groups[first], vector=vector)
                    fresh[texts[first]] = vector
                else:
                    self._record_group(outcome, groups[first], reason="no embedding returned")
            if fresh:
                await self.cache.set_multiple(fresh, meta)

    async def _individual_fallback(
        self,
        texts: Sequence[str],
        batch: list[tuple[int, str]],
        groups: dict[int, list[int]],
        meta: EmbeddingMeta,
        outcome: BatchOutcome,
        failure: DegradationFailure,
    ) -> None:
        """Retry a failed sub-batch one item at a time."""
        if not self.config.batch.individual_fallback or not self.circuits.is_available(
            SINGLE_SERVICE
        ):
            reason = f"{failure.kind.value}: {failure.message}"
            for first, _ in batch:
                self._record_group(outcome, groups[first], reason=reason)
            return

        logger.info(f"Batch of {len(batch)} failed ({failure.kind.value}), retrying items individually")
        for n, (first, text) in enumerate(batch):
            if n:
                await self._sleep(self.config.batch.individual_delay)
            context = {"operation": "individual_fallback", "position": first}
            result = await self.circuits.execute(
                SINGLE_SERVICE,
                functools.partial(
                    retry_with_backoff,
                    self._call_provider_single,
                    text,
                    config=self.config.retry,
                    context_msg=f"{SINGLE_SERVICE} position={first}",
                    sleep=self._sleep,
                ),
                lambda exc, ctx=context: classify_exception(exc, ctx),
                context,
            )
            if isinstance(result, DegradationFailure):
                self._record_group(
                    outcome, groups[first], reason=f"{result.kind.value}: {result.message}"
                )
            else:
                self._record_group(outcome, groups[first], vector=result)
                await self.cache.set(texts[first], result, meta)

    @staticmethod
    def _record_group(
        outcome: BatchOutcome,
        positions: list[int],
        vector: Vector | None = None,
        reason: str = "",
    ) -> None:
        for position in positions:
            if vector is not None:
                outcome.record_success(position, vector)
            else:
                outcome.record_failure(position, reason)

    def _finish_batch(self, outcome: BatchOutcome, input_count: int) -> dict[int, Vector]:
        if not outcome.failed:
            return dict(outcome.successful)

        context = {"input_count": input_count, "failed": len(outcome.failed), "total": outcome.total}
        if outcome.successful:
            failure = DegradationFailure(
                FailureKind.PARTIAL_BATCH,
                f"{len(outcome.failed)}/{outcome.total} batch items failed",
                context=context,
                outcome=outcome,
            )
            logger.warning(
                "PARTIAL_BATCH: %d/%d successful, failed positions=%s",
                len(outcome.successful),
                outcome.total,
                sorted(outcome.failed)[:10],
            )
        else:
            failure = DegradationFailure(
                FailureKind.SERVICE_UNAVAILABLE,
                "Batch embedding service unavailable",
                context=context,
                outcome=outcome,
            )
        self._degraded_responses += 1
        safe_notify(self._notifier, failure)
        raise failure

    async def _call_provider_batch(self, texts: list[str]) -> list[Vector]:
        tokens = sum(count_tokens(t) for t in texts)
        started = self._clock()
        try:
            vectors = await self.provider.embed_batch(texts)
            if len(vectors) != len(texts):
                raise DegradationFailure(
                    FailureKind.SERVICE_UNAVAILABLE,
                    f"Provider returned {len(vectors)} vectors for {len(texts)} inputs",
                )
        except Exception as exc:
            self._record_call("embed_batch", len(texts), tokens, started, exc)
            raise
        self._record_call("embed_batch", len(texts), tokens, started)
        self._items_generated += sum(1 for v in vectors if v)
        return [list(v) if v else [] for v in vectors]

    def _record_call(
        self,
        operation: str,
        item_count: int,
        tokens: int,
        started: float,
        error: BaseException | None = None,
    ) -> None:
        self._provider_calls += 1
        error_kind = None
        if error is not None:
            self._provider_failures += 1
            error_kind = classify_exception(error).kind.value
        safe_emit(
            self._telemetry,
            ProviderCallEvent(
                operation=operation,
                provider_id=self.provider.provider_id,
                model=self.provider.model_name,
                item_count=item_count,
                token_count=tokens,
                cost_estimate=estimate_cost(self.provider.model_name, tokens),
                duration=self._clock() - started,
                outcome="failure" if error is not None else "success",
                error_kind=error_kind,
            ),
        )

    # -- capability and control ----------------------------------------------

    def dimension(self) -> int:
        return self.provider.dimensions

    async def is_available(self) -> bool:
        if self.in_fallback_mode or not self.circuits.is_available(SINGLE_SERVICE):
            return False
        return await self.provider.is_available()

    @property
    def batch_size(self) -> int:
        return self._batch_items

    def reduce_batch_size(self) -> int:
        """Halve the sub-batch item cap (minimum 1). Returns the new cap."""
        self._batch_items = max(1, self._batch_items // 2)
        logger.warning(f"Reduced embedding batch size to {self._batch_items}")
        return self._batch_items

    def restore_batch_size(self) -> None:
        self._batch_items = self.config.batch.max_batch_items

    @property
    def in_fallback_mode(self) -> bool:
        if self._fallback_until is None:
            return False
        if self._clock() >= self._fallback_until:
            self._fallback_until = None
            logger.info("Embedding fallback mode expired")
            return False
        return True

    def enter_fallback_mode(self, duration: float = 300.0) -> None:
        """Serve cache only (no provider calls) for ``duration`` seconds."""
        self._fallback_until = self._clock() + duration
        logger.warning(f"Embedding service entering fallback mode for {duration:.0f}s")

    def exit_fallback_mode(self) -> None:
        self._fallback_until = None

    def reset_circuit_breakers(self) -> None:
        self.circuits.reset(SINGLE_SERVICE)
        self.circuits.reset(BATCH_SERVICE)

    async def service_stats(self) -> dict[str, Any]:
        return {
            "provider": self.provider.provider_id,
            "model": self.provider.model_name,
            "dimension": self.provider.dimensions,
            "provider_configured": self.provider.is_configured(),
            "circuits": {
                SINGLE_SERVICE: self.circuits.stats(SINGLE_SERVICE),
                BATCH_SERVICE: self.circuits.stats(BATCH_SERVICE),
            },
            "cache": await self.cache.stats(),
            "batch_size": self._batch_items,
            "fallback_mode": self.in_fallback_mode,
            "in_flight": len(self._in_flight),
            "provider_calls": self._provider_calls,
            "provider_failures": self._provider_failures,
            "items_generated": self._items_generated,
            "fallbacks_served": self._fallbacks_served,
            "degraded_responses": self._degraded_responses,
        }

    async def close(self) -> None:
        await self.provider.close()
        await self.cache.close()

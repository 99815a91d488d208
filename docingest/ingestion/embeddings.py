"""
Batched embedding generation.

N chunks are embedded with ceil(N / batch_size) batch calls. When a batch
call fails for good, only that batch is retried item by item, so a single
poisoned input costs at most one batch worth of single calls.
"""

import asyncio
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from ..clients.embedding_client import EmbeddingService
from ..shared.errors import (
    CircuitOpenFault,
    PartialFailureFault,
    ProcessingFault,
    ValidationFault,
)
from ..shared.observability import get_logger
from ..shared.observability.metrics import embedding_requests_total
from ..shared.resilience import ResourceCleanup, RetryStrategy, TimeoutManager
from .models import Chunk, EmbeddedChunk, StageOutcome

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int], Any]


@dataclass
class EmbeddingFailure:
    chunk: Chunk
    error: ProcessingFault


@dataclass
class EmbeddingOutcome(StageOutcome):
    batch_calls: int = 0
    single_calls: int = 0


class BatchEmbeddingGenerator:
    def __init__(
        self,
        client: EmbeddingService,
        retry: RetryStrategy,
        batch_size: int = 200,
        base_batch_delay_ms: int = 50,
        timeout_seconds: float = 30.0,
        min_success_rate: float = 0.5,
        provider_max_batch_size: int = 2048,
        active_jobs: Callable[[], int] = lambda: 1,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.client = client
        self.retry = retry
        self.batch_size = min(batch_size, provider_max_batch_size)
        self.base_batch_delay_ms = base_batch_delay_ms
        self.timeout_seconds = timeout_seconds
        self.min_success_rate = min_success_rate
        self._active_jobs = active_jobs
        self._sleep = sleep

    def batch_count(self, total: int) -> int:
        return math.ceil(total / self.batch_size) if total else 0

    def adaptive_delay_seconds(self) -> float:
        """Pause between batches, scaled by how many jobs share the provider."""
        return self.base_batch_delay_ms * max(1, self._active_jobs()) / 1000.0

    async def _call(
        self, texts: List[str], operation_name: str, timeouts: TimeoutManager
    ) -> List[List[float]]:
        vectors = await self.retry.execute(
            lambda: timeouts.race_with_timeout(
                self.client.embed(texts),
                self.timeout_seconds,
                f"Embedding {len(texts)} input(s)",
            ),
            operation_name=operation_name,
        )
        if len(vectors) != len(texts):
            raise ValidationFault(
                f"Embedding service returned {len(vectors)} vectors for {len(texts)} inputs"
            )
        return vectors

    async def _embed_singly(
        self,
        batch: Sequence[Chunk],
        outcome: EmbeddingOutcome,
        timeouts: TimeoutManager,
    ) -> None:
        for chunk in batch:
            outcome.single_calls += 1
            try:
                vectors = await self._call([chunk.content], "embed_single", timeouts)
            except ProcessingFault as exc:
                embedding_requests_total.labels(mode="single", status="error").inc()
                outcome.failures.append(EmbeddingFailure(chunk, exc))
                logger.warning(
                    "chunk_embedding_failed",
                    chunk_index=chunk.index,
                    fault=exc.kind,
                    error=exc.message,
                )
                continue
            embedding_requests_total.labels(mode="single", status="ok").inc()
            outcome.successes.append(EmbeddedChunk(chunk, vectors[0]))

    async def generate(
        self,
        chunks: Sequence[Chunk],
        progress: Optional[ProgressCallback] = None,
    ) -> EmbeddingOutcome:
        """
        Embed ``chunks`` in order.

        Raises:
            CircuitOpenFault: the batch breaker is open
            PartialFailureFault: fewer than ``min_success_rate`` of chunks embedded
        """
        outcome = EmbeddingOutcome(total=len(chunks))
        batches = [
            list(chunks[i : i + self.batch_size])
            for i in range(0, len(chunks), self.batch_size)
        ]
        timeouts = TimeoutManager()

        async with ResourceCleanup() as cleanup:
            cleanup.register(timeouts.cancel_all, "cancel embedding timeouts")

            for number, batch in enumerate(batches, start=1):
                outcome.batch_calls += 1
                try:
                    vectors = await self._call(
                        [c.content for c in batch], "embed_batch", timeouts
                    )
                except CircuitOpenFault:
                    embedding_requests_total.labels(mode="batch", status="rejected").inc()
                    raise
                except ProcessingFault as exc:
                    embedding_requests_total.labels(mode="batch", status="error").inc()
                    logger.warning(
                        "embedding_batch_failed_falling_back",
                        batch=number,
                        batches=len(batches),
                        batch_size=len(batch),
                        fault=exc.kind,
                        error=exc.message,
                    )
                    await self._embed_singly(batch, outcome, timeouts)
                else:
                    embedding_requests_total.labels(mode="batch", status="ok").inc()
                    outcome.successes.extend(
                        EmbeddedChunk(chunk, vector) for chunk, vector in zip(batch, vectors)
                    )

                if progress is not None:
                    progress(len(outcome.successes) + len(outcome.failures), len(chunks))

                if number < len(batches):
                    await self._sleep(self.adaptive_delay_seconds())

        logger.info(
            "embeddings_generated",
            total=outcome.total,
            succeeded=len(outcome.successes),
            failed=len(outcome.failures),
            batch_calls=outcome.batch_calls,
            single_calls=outcome.single_calls,
        )

        if outcome.failures and outcome.success_rate < self.min_success_rate:
            raise PartialFailureFault(
                f"Too many embedding failures: {len(outcome.failures)}/{outcome.total}",
                successes=outcome.successes,
                failures=outcome.failures,
            )
        return outcome


"""
In-process FIFO backlog for jobs the concurrency gate could not admit.

Draining is event-driven: it is triggered on every enqueue and every job
completion, and a single-flight flag keeps more than one drain from
running at a time. Each launched job holds one gate slot, and its done
callback gives that slot back exactly once before draining again.
"""

import asyncio
import math
import time
from collections import deque
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from ..shared.errors import ValidationFault
from ..shared.observability import get_logger
from ..shared.observability.metrics import ingestion_queue_depth
from .concurrency import ConcurrencyGate, LoadInfo
from .models import JobStatus
from .persistence import JobStore
from .tasks import spawn_background_task

logger = get_logger(__name__)

JobRunner = Callable[[str, Dict[str, Any]], Awaitable[Any]]

DEFAULT_AVERAGE_JOB_SECONDS = 300.0
SECONDS_PER_POSITION = 30
MIN_WAIT_SECONDS = 10
MAX_WAIT_SECONDS = 30 * 60


@dataclass
class QueuedJob:
    job_id: str
    runner: JobRunner
    metadata: Dict[str, Any] = field(default_factory=dict)
    enqueued_at: float = field(default_factory=time.time)
    released: bool = False


@dataclass(frozen=True)
class QueuePlacement:
    queue_position: int
    estimated_wait_seconds: int
    queue_length: int


def estimate_wait_seconds(
    position: int,
    load: LoadInfo,
    average_job_seconds: float = DEFAULT_AVERAGE_JOB_SECONDS,
) -> int:
    """Rough ETA for a job at ``position`` (1-based) in the backlog.

    With spare capacity the wait is ``max(10, position * 30)``. At capacity
    the running jobs are assumed half done, so the wait is
    ``(ceil(avg / 2) + position) * (avg / max)``, capped at 30 minutes.
    """
    if load.available > 0:
        return max(MIN_WAIT_SECONDS, position * SECONDS_PER_POSITION)
    remaining = math.ceil(average_job_seconds / 2)
    total = (remaining + position) * (average_job_seconds / load.max)
    return int(math.ceil(min(total, MAX_WAIT_SECONDS)))


class JobQueue:
    def __init__(
        self,
        gate: ConcurrencyGate,
        store: JobStore,
        average_job_seconds: float = DEFAULT_AVERAGE_JOB_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.gate = gate
        self.store = store
        self.average_job_seconds = average_job_seconds
        self._clock = clock
        self._pending: Deque[QueuedJob] = deque()
        self._running: Dict[str, asyncio.Task] = {}
        # Ids between admission and their task existing
        self._claimed: Set[str] = set()
        self._drain_tasks: Set[asyncio.Task] = set()
        self._draining = False

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def is_draining(self) -> bool:
        return self._draining

    @property
    def running_job_ids(self) -> List[str]:
        return list(self._running)

    def contains(self, job_id: str) -> bool:
        return (
            job_id in self._running
            or job_id in self._claimed
            or any(j.job_id == job_id for j in self._pending)
        )

    def claim(self, job_id: str) -> None:
        """Reserve a job id before the first await of a submission.

        Raises:
            ValidationFault: the job is already claimed, queued or running
        """
        if self.contains(job_id):
            raise ValidationFault(f"Job {job_id} is already queued or running")
        self._claimed.add(job_id)

    def release_claim(self, job_id: str) -> None:
        self._claimed.discard(job_id)

    def enqueue(self, job: QueuedJob) -> QueuePlacement:
        """Append a job to the backlog and trigger a drain.

        Raises:
            ValidationFault: the job is already queued or running
        """
        if self.contains(job.job_id):
            raise ValidationFault(f"Job {job.job_id} is already queued or running")

        self._pending.append(job)
        ingestion_queue_depth.set(len(self._pending))
        position = len(self._pending)
        placement = QueuePlacement(
            queue_position=position,
            estimated_wait_seconds=estimate_wait_seconds(
                position, self.gate.get_load(), self.average_job_seconds
            ),
            queue_length=len(self._pending),
        )
        logger.info(
            "job_enqueued",
            job_id=job.job_id,
            queue_position=placement.queue_position,
            estimated_wait_seconds=placement.estimated_wait_seconds,
        )
        self._schedule_drain()
        return placement

    def _schedule_drain(self) -> None:
        if self._draining or not self._pending:
            return
        task = spawn_background_task(self.drain(), name="job-queue-drain")
        self._drain_tasks.add(task)
        task.add_done_callback(self._drain_tasks.discard)

    async def drain(self) -> int:
        """Launch queued jobs while the gate has capacity.

        Returns the number of jobs launched by this call; 0 when another
        drain is already in progress.
        """
        if self._draining:
            return 0
        self._draining = True
        launched = 0
        try:
            while self._pending and self.gate.has_capacity():
                job = self._pending.popleft()
                ingestion_queue_depth.set(len(self._pending))
                logger.info(
                    "queued_job_dequeued",
                    job_id=job.job_id,
                    waited_seconds=round(self._clock() - job.enqueued_at, 1),
                    remaining=len(self._pending),
                )
                await self.launch(job)
                launched += 1
        finally:
            self._draining = False
        return launched

    async def launch(self, job: QueuedJob) -> asyncio.Task:
        """Take a gate slot, mark the job processing and start it in the background."""
        self._claimed.add(job.job_id)
        self.gate.increment()
        try:
            await self._mark_processing(job.job_id)
        except asyncio.CancelledError:
            self.gate.decrement()
            self._claimed.discard(job.job_id)
            raise

        task = spawn_background_task(
            job.runner(job.job_id, job.metadata), name=f"ingest-{job.job_id}"
        )
        self._running[job.job_id] = task
        self._claimed.discard(job.job_id)
        task.add_done_callback(partial(self._on_job_done, job))
        return task

    async def _mark_processing(self, job_id: str) -> None:
        try:
            await self.store.update_job(job_id, status=JobStatus.PROCESSING.value)
        except Exception as exc:
            # The pipeline sets the status again; a failed write here is not fatal
            logger.warning("mark_processing_failed", job_id=job_id, error=str(exc))

    def _on_job_done(self, job: QueuedJob, task: asyncio.Task) -> None:
        if job.released:
            return
        job.released = True
        self._running.pop(job.job_id, None)
        self.gate.decrement()

        outcome = "cancelled" if task.cancelled() else (
            "failed" if task.exception() is not None else "completed"
        )
        logger.info(
            "job_slot_freed",
            job_id=job.job_id,
            outcome=outcome,
            active=self.gate.active_count,
            queue_length=len(self._pending),
        )
        self._schedule_drain()

    def get_status(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            "queue_length": len(self._pending),
            "is_draining": self._draining,
            "load": self.gate.get_load().to_dict(),
            "running_jobs": list(self._running),
            "queued_jobs": [
                {
                    "job_id": job.job_id,
                    "enqueued_at": job.enqueued_at,
                    "wait_seconds": round(now - job.enqueued_at, 1),
                }
                for job in self._pending
            ],
        }

    def clear(self) -> int:
        """Drop every queued (not yet running) job. Returns how many were removed."""
        cleared = len(self._pending)
        self._pending.clear()
        ingestion_queue_depth.set(0)
        logger.info("queue_cleared", cleared=cleared)
        return cleared

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until nothing is queued, draining or running."""

        async def _wait() -> None:
            while self._running or self._drain_tasks or (
                self._pending and self.gate.has_capacity()
            ):
                pending = list(self._running.values()) + list(self._drain_tasks)
                if not pending:
                    # Capacity is free but no drain is scheduled yet
                    await self.drain()
                    continue
                await asyncio.gather(*pending, return_exceptions=True)

        await asyncio.wait_for(_wait(), timeout)

    async def shutdown(self) -> None:
        """Drop the backlog and cancel jobs still running."""
        self.clear()
        tasks = list(self._running.values()) + list(self._drain_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

"""
Ingestion service: admission, queueing and background execution of jobs.

``submit_job`` is the single entry point. A job either starts right away,
waits in the FIFO backlog with an ETA, or (with queueing disabled) is
turned away with a capacity-exceeded response.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from ..clients.embedding_client import EmbeddingService, HttpEmbeddingClient
from ..shared.config import Config, Settings
from ..shared.observability import get_logger
from ..shared.observability.metrics import ingestion_submissions_total
from ..shared.resilience import RetryPolicy, RetryStrategy
from .concurrency import Admitted, CapacityExceeded, ConcurrencyGate
from .extract import detect_source_kind
from .models import JobStatus, ProcessingJob
from .persistence import (
    InMemoryJobStore,
    JobNotFound,
    JobStore,
    LocalFileStorage,
    RedisJobStore,
    SourceStorage,
)
from .pipeline import IngestionPipeline, PipelineResult
from .queue import JobQueue, QueuedJob, QueuePlacement
from .recovery import ErrorRecovery
from .tasks import spawn_background_task

logger = get_logger(__name__)


@dataclass(frozen=True)
class Queued:
    placement: QueuePlacement

    status_code = 202


SubmitResult = Union[Admitted, Queued, CapacityExceeded]


class IngestionService:
    def __init__(
        self,
        config: Config,
        store: JobStore,
        embedding_client: EmbeddingService,
        storage: SourceStorage,
        retry: Optional[RetryStrategy] = None,
        pipeline: Optional[IngestionPipeline] = None,
    ):
        self.config = config
        self.store = store
        self.embedding_client = embedding_client
        self.storage = storage
        self.retry = retry or RetryStrategy(
            RetryPolicy.from_config(config.retry, config.circuit_breaker)
        )
        self.gate = ConcurrencyGate(
            config.processing.max_concurrent_jobs,
            retry_after_seconds=config.processing.capacity_retry_after_seconds,
        )
        self.queue = JobQueue(
            self.gate, store, average_job_seconds=config.processing.average_job_seconds
        )
        self.pipeline = pipeline or IngestionPipeline(
            config, storage, self.retry, active_jobs=lambda: self.gate.active_count
        )
        self.recovery = ErrorRecovery(store)
        self._reaper: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config: Config, settings: Settings) -> "IngestionService":
        if settings.redis_uri:
            store: JobStore = RedisJobStore.from_url(settings.redis_uri)
        else:
            store = InMemoryJobStore()
        client = HttpEmbeddingClient(
            base_url=settings.embedding_base_url,
            api_key=settings.embedding_api_key,
            model=config.embedding.model,
            transcription_model=config.transcription.model,
            timeout=max(config.embedding.timeout_seconds, config.transcription.timeout_seconds),
        )
        return cls(config, store, client, LocalFileStorage())

    async def create_job(
        self,
        source_path: str,
        title: Optional[str] = None,
        owner_id: Optional[str] = None,
        source_kind: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> ProcessingJob:
        job = ProcessingJob(
            job_id=job_id or uuid.uuid4().hex,
            source_path=source_path,
            source_kind=source_kind or detect_source_kind(source_path).value,
            title=title,
            owner_id=owner_id,
        )
        await self.store.create_job(job)
        logger.info("job_created", job_id=job.job_id, source=source_path, kind=job.source_kind)
        return job

    async def _run_job(self, job_id: str, metadata: Dict[str, Any]) -> PipelineResult:
        return await self.pipeline.run(job_id, self.store, self.embedding_client, metadata)

    async def submit_job(
        self, job_id: str, metadata: Optional[Dict[str, Any]] = None
    ) -> SubmitResult:
        """
        Admit, queue or reject a job.

        Jobs already waiting keep their place: a new submission only starts
        immediately when the backlog is empty.

        Raises:
            JobNotFound: unknown job id
            ValidationFault: the job is already queued or running here
        """
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        self.queue.claim(job_id)
        try:
            return await self._admit_or_queue(job_id, metadata)
        finally:
            self.queue.release_claim(job_id)

    async def _admit_or_queue(
        self, job_id: str, metadata: Optional[Dict[str, Any]]
    ) -> SubmitResult:
        queued_job = QueuedJob(job_id=job_id, runner=self._run_job, metadata=dict(metadata or {}))
        decision = self.gate.check_capacity()

        if isinstance(decision, Admitted) and len(self.queue) == 0:
            await self.queue.launch(queued_job)
            ingestion_submissions_total.labels(outcome="admitted").inc()
            logger.info("job_admitted", job_id=job_id, active=self.gate.active_count)
            return Admitted(load=self.gate.get_load())

        if not self.config.processing.queue_enabled:
            ingestion_submissions_total.labels(outcome="rejected").inc()
            if isinstance(decision, CapacityExceeded):
                return decision
            return CapacityExceeded(
                retry_after=self.gate.retry_after_seconds, load=self.gate.get_load()
            )

        await self.store.update_job(
            job_id, status=JobStatus.PENDING.value, enqueued_at=time.time()
        )
        self.queue.release_claim(job_id)
        placement = self.queue.enqueue(queued_job)
        ingestion_submissions_total.labels(outcome="queued").inc()
        return Queued(placement=placement)

    def get_load(self) -> Dict[str, int]:
        return self.gate.get_load().to_dict()

    def get_queue_status(self) -> Dict[str, Any]:
        return self.queue.get_status()

    async def reset_stuck_jobs(self, threshold_seconds: Optional[float] = None) -> List[str]:
        threshold = threshold_seconds or self.config.processing.stuck_job_threshold_seconds
        return await self.recovery.reset_stuck_jobs(
            threshold, exclude=self.queue.running_job_ids
        )

    async def reap_loop(self, interval_seconds: float = 60.0) -> None:
        """Periodically reset jobs stuck in processing."""
        logger.info("stuck_job_reaper_started", interval_seconds=interval_seconds)
        while True:
            try:
                await self.reset_stuck_jobs()
            except Exception as exc:
                logger.error("stuck_job_reaper_failed", error=str(exc))
            await asyncio.sleep(interval_seconds)

    def start_reaper(self, interval_seconds: float = 60.0) -> asyncio.Task:
        if self._reaper is None or self._reaper.done():
            self._reaper = spawn_background_task(
                self.reap_loop(interval_seconds), name="stuck-job-reaper"
            )
        return self._reaper

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        await self.queue.wait_idle(timeout)

    async def shutdown(self) -> None:
        if self._reaper is not None:
            self._reaper.cancel()
            await asyncio.gather(self._reaper, return_exceptions=True)
            self._reaper = None
        await self.queue.shutdown()
        aclose = getattr(self.embedding_client, "aclose", None)
        if aclose is not None:
            await aclose()
        logger.info("ingestion_service_stopped")

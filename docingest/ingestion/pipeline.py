"""
Stage pipeline for a single ingestion job.

download -> extract (+ page markers) -> chunk -> embed -> store

Every external call goes through the shared ``RetryStrategy`` and a
per-run ``TimeoutManager``. A checkpoint is saved after extract, chunk and
embed, and again before the store stage creates the document, so a
retried job resumes after its last completed stage. Unrecoverable
failures are compensated (chunks, then document) and the job is marked
``error`` with a user-safe message.
"""

import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from ..clients.embedding_client import EmbeddingService
from ..shared.config import Config
from ..shared.errors import ProcessingFault, ValidationFault, classify_fault, user_message
from ..shared.observability import get_logger, set_correlation_id
from ..shared.observability.metrics import (
    chunks_stored_total,
    ingestion_jobs_total,
    ingestion_stage_duration_seconds,
)
from ..shared.resilience import ResourceCleanup, RetryStrategy, TimeoutManager
from .chunker import chunk_text
from .embeddings import BatchEmbeddingGenerator
from .extract import extract_source
from .models import (
    CREATE_DOCUMENT,
    STAGE_ORDER,
    Checkpoint,
    Chunk,
    EmbeddedChunk,
    ExtractedSource,
    JobStatus,
    ProcessingJob,
    SourceKind,
    Stage,
    StageOutcome,
)
from .page_markers import PageMarkerDetector
from .persistence import DOCUMENT_CHUNKS, DOCUMENTS, JobNotFound, JobStore, SourceStorage
from .recovery import ErrorRecovery, create_checkpoint, handle_partial_failure

logger = get_logger(__name__)


@dataclass
class RunState:
    job: ProcessingJob
    metadata: Dict[str, Any]
    completed: List[str] = field(default_factory=list)
    checkpoint_data: Dict[str, Any] = field(default_factory=dict)
    source_bytes: Optional[bytes] = None
    extracted: Optional[ExtractedSource] = None
    chunks: List[Chunk] = field(default_factory=list)
    embedded: List[EmbeddedChunk] = field(default_factory=list)
    document_id: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def from_checkpoint(
        cls, job: ProcessingJob, metadata: Dict[str, Any], checkpoint: Optional[Checkpoint]
    ) -> "RunState":
        state = cls(job=job, metadata=metadata)
        if checkpoint is None:
            return state
        data = checkpoint.data
        state.completed = list(checkpoint.completed)
        state.checkpoint_data = dict(data)
        if data.get("extracted"):
            state.extracted = ExtractedSource.from_dict(data["extracted"])
        if data.get("chunks"):
            state.chunks = [Chunk.from_dict(c) for c in data["chunks"]]
        if data.get("embeddings"):
            by_index = {c.index: c for c in state.chunks}
            state.embedded = [
                EmbeddedChunk(by_index[item["index"]], item["embedding"])
                for item in data["embeddings"]
                if item["index"] in by_index
            ]
        state.document_id = data.get("document_id")
        return state


@dataclass
class PipelineResult:
    job_id: str
    status: str
    document_id: Optional[str] = None
    chunk_count: int = 0
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    resumed_from: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.READY.value


class IngestionPipeline:
    def __init__(
        self,
        config: Config,
        storage: SourceStorage,
        retry: RetryStrategy,
        active_jobs: Callable[[], int] = lambda: 1,
        detector: Optional[PageMarkerDetector] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.config = config
        self.storage = storage
        self.retry = retry
        self._active_jobs = active_jobs
        self._sleep = sleep
        self.detector = detector or PageMarkerDetector(
            min_coverage=config.page_markers.min_marker_coverage,
            min_unique_page_ratio=config.page_markers.min_unique_page_ratio,
            single_page_warn=config.page_markers.single_page_warn,
        )

    async def run(
        self,
        job_id: str,
        store: JobStore,
        embedding_client: EmbeddingService,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PipelineResult:
        """Run (or resume) a job to a terminal state.

        Faults are recorded on the job and reported in the result rather
        than raised. Cancellation propagates and leaves the job in
        ``processing`` for the stuck-job sweep.
        """
        set_correlation_id(job_id)
        structlog.contextvars.bind_contextvars(job_id=job_id)
        recovery = ErrorRecovery(store)
        timeouts = TimeoutManager()
        started = time.perf_counter()

        async with ResourceCleanup() as cleanup:
            cleanup.register(timeouts.cancel_all, "cancel pipeline timeouts")
            cleanup.register(
                lambda: structlog.contextvars.unbind_contextvars("job_id"),
                "unbind job log context",
            )
            cleanup.register(lambda: set_correlation_id(None), "clear correlation id")

            job = await store.get_job(job_id)
            if job is None:
                raise JobNotFound(job_id)

            plan = await recovery.recover_from_checkpoint(job_id)
            if plan is None:
                await store.update_job(
                    job_id, status=JobStatus.PROCESSING.value, error_message=None
                )
                checkpoint = None
            else:
                checkpoint = plan.checkpoint

            state = RunState.from_checkpoint(job, dict(metadata or {}), checkpoint)
            resumed_from = plan.resume_stage.value if plan and plan.resume_stage else None
            logger.info(
                "pipeline_started",
                source=job.source_path,
                kind=job.source_kind,
                resumed_from=resumed_from,
                completed=state.completed,
            )

            try:
                for stage in STAGE_ORDER:
                    if stage.value in state.completed:
                        continue
                    await self._run_stage(stage, state, store, embedding_client, recovery, timeouts)
            except ProcessingFault as exc:
                return await self._fail(state, exc, recovery, store, started, resumed_from)
            except Exception as exc:
                return await self._fail(
                    state, classify_fault(exc, operation="pipeline"), recovery, store,
                    started, resumed_from,
                )

            return await self._finish(state, recovery, store, started, resumed_from)

    async def _run_stage(
        self,
        stage: Stage,
        state: RunState,
        store: JobStore,
        client: EmbeddingService,
        recovery: ErrorRecovery,
        timeouts: TimeoutManager,
    ) -> None:
        handlers = {
            Stage.DOWNLOAD: lambda: self._download(state, timeouts),
            Stage.EXTRACT: lambda: self._extract(state, client, recovery, timeouts),
            Stage.CHUNK: lambda: self._chunk(state, recovery),
            Stage.EMBED: lambda: self._embed(state, client, recovery),
            Stage.STORE: lambda: self._store(state, store, recovery, timeouts),
        }
        await store.update_job(state.job.job_id, stage=stage.value)
        stage_started = time.perf_counter()
        status = "ok"
        try:
            await handlers[stage]()
        except Exception:
            status = "error"
            raise
        finally:
            elapsed = time.perf_counter() - stage_started
            ingestion_stage_duration_seconds.labels(stage=stage.value, status=status).observe(
                elapsed
            )
            logger.info(
                "stage_finished", stage=stage.value, status=status, seconds=round(elapsed, 3)
            )

    async def _guarded(
        self,
        timeouts: TimeoutManager,
        factory: Callable[[], Awaitable[Any]],
        operation_name: str,
        seconds: float,
    ) -> Any:
        return await self.retry.execute(
            lambda: timeouts.race_with_timeout(factory(), seconds, f"{operation_name} timed out"),
            operation_name=operation_name,
        )

    async def _save(
        self, state: RunState, recovery: ErrorRecovery, stage: Stage, **data: Any
    ) -> None:
        state.checkpoint_data.update(data)
        await recovery.save_checkpoint(
            state.job.job_id,
            create_checkpoint(stage.value, state.completed, state.checkpoint_data),
        )

    async def _download(self, state: RunState, timeouts: TimeoutManager) -> None:
        path = state.job.source_path
        data = await self._guarded(
            timeouts,
            lambda: self.storage.fetch(path),
            "download",
            self.config.processing.stage_timeout_seconds,
        )
        limit = self.config.storage.max_file_size_mb * 1024 * 1024
        if len(data) > limit:
            raise ValidationFault(
                f"File exceeds maximum size of {self.config.storage.max_file_size_mb}MB"
            )
        decision = handle_partial_failure(StageOutcome(successes=[path]), Stage.DOWNLOAD)
        if not decision.should_continue:
            raise decision.error
        state.source_bytes = data
        state.completed.append(Stage.DOWNLOAD.value)

    async def _extract(
        self,
        state: RunState,
        client: EmbeddingService,
        recovery: ErrorRecovery,
        timeouts: TimeoutManager,
    ) -> None:
        job = state.job
        seconds = (
            self.config.transcription.timeout_seconds
            if job.source_kind == SourceKind.AUDIO.value
            else self.config.processing.stage_timeout_seconds
        )
        extracted = await self._guarded(
            timeouts,
            lambda: extract_source(
                state.source_bytes, job.source_kind, Path(job.source_path).name, client
            ),
            "transcribe" if job.source_kind == SourceKind.AUDIO.value else "extract",
            seconds,
        )
        state.extracted = self.detector.ensure_markers(extracted)
        state.source_bytes = None
        state.completed.append(Stage.EXTRACT.value)
        await self._save(state, recovery, Stage.EXTRACT, extracted=state.extracted.to_dict())

    async def _chunk(self, state: RunState, recovery: ErrorRecovery) -> None:
        cfg = self.config.chunking
        source = state.extracted
        state.chunks = chunk_text(
            source.text,
            chunk_size=cfg.chunk_size_tokens,
            overlap=cfg.overlap_tokens,
            total_pages=source.unit_count,
            segments=source.segments or None,
            chars_per_token=cfg.chars_per_token,
        )
        if not source.is_time_based and source.unit_count > 1:
            report = self.detector.validate_page_distribution(state.chunks)
            if not report.ok and report.message:
                state.warnings.append(report.message)
        state.completed.append(Stage.CHUNK.value)
        await self._save(
            state, recovery, Stage.CHUNK, chunks=[c.to_dict() for c in state.chunks]
        )

    async def _embed(
        self, state: RunState, client: EmbeddingService, recovery: ErrorRecovery
    ) -> None:
        cfg = self.config.embedding
        kwargs = {"sleep": self._sleep} if self._sleep else {}
        generator = BatchEmbeddingGenerator(
            client,
            self.retry,
            batch_size=cfg.batch_size,
            base_batch_delay_ms=cfg.base_batch_delay_ms,
            timeout_seconds=cfg.timeout_seconds,
            min_success_rate=cfg.min_success_rate,
            provider_max_batch_size=cfg.provider_max_batch_size,
            active_jobs=self._active_jobs,
            **kwargs,
        )
        outcome = await generator.generate(state.chunks)
        decision = handle_partial_failure(
            outcome, Stage.EMBED, min_embed_success_rate=cfg.min_success_rate
        )
        if not decision.should_continue:
            raise decision.error
        if outcome.failures:
            state.warnings.append(decision.reason)
        state.embedded = list(outcome.successes)
        state.completed.append(Stage.EMBED.value)
        await self._save(
            state,
            recovery,
            Stage.EMBED,
            embeddings=[{"index": e.chunk.index, "embedding": e.embedding} for e in state.embedded],
        )

    async def _store(
        self,
        state: RunState,
        store: JobStore,
        recovery: ErrorRecovery,
        timeouts: TimeoutManager,
    ) -> None:
        job = state.job
        seconds = self.config.processing.stage_timeout_seconds

        if state.document_id:
            # Resumed store stage: drop whatever the previous attempt wrote
            await store.delete_records(DOCUMENT_CHUNKS, state.document_id)
            await store.delete_records(DOCUMENTS, state.document_id)
        else:
            state.document_id = f"doc_{uuid.uuid4().hex}"
        document_id = state.document_id
        await self._save(state, recovery, Stage.STORE, document_id=document_id)

        document = {
            "id": document_id,
            "job_id": job.job_id,
            "title": state.metadata.get("title") or job.title or Path(job.source_path).name,
            "source_kind": job.source_kind,
            "unit_count": state.extracted.unit_count if state.extracted else None,
            "chunk_count": len(state.embedded),
            "owner_id": job.owner_id,
        }
        try:
            await self._guarded(
                timeouts,
                lambda: store.insert_records(DOCUMENTS, document_id, [document]),
                CREATE_DOCUMENT,
                seconds,
            )
        except ProcessingFault as exc:
            decision = handle_partial_failure(
                StageOutcome(failures=[{"error": exc.message}]), CREATE_DOCUMENT
            )
            raise decision.error from exc
        state.completed.append(CREATE_DOCUMENT)

        batch_size = self.config.storage.insert_batch_size
        stored: List[EmbeddedChunk] = []
        failures: List[Dict[str, Any]] = []
        for offset in range(0, len(state.embedded), batch_size):
            batch = state.embedded[offset : offset + batch_size]
            records = [
                {
                    "id": f"{document_id}:{e.chunk.index}",
                    "document_id": document_id,
                    "chunk_index": e.chunk.index,
                    "content": e.chunk.content,
                    "embedding": e.embedding,
                    "metadata": e.chunk.metadata,
                }
                for e in batch
            ]
            try:
                await self._guarded(
                    timeouts,
                    lambda records=records: store.insert_records(
                        DOCUMENT_CHUNKS, document_id, records
                    ),
                    "store_chunks",
                    seconds,
                )
            except ProcessingFault as exc:
                failures.extend({"index": e.chunk.index, "error": exc.message} for e in batch)
                logger.warning(
                    "chunk_batch_store_failed",
                    offset=offset,
                    batch_size=len(batch),
                    error=exc.message,
                )
                continue
            stored.extend(batch)
            chunks_stored_total.inc(len(batch))

        decision = handle_partial_failure(
            StageOutcome(successes=stored, failures=failures), Stage.STORE
        )
        if not decision.should_continue:
            raise decision.error
        if failures:
            state.warnings.append(decision.reason)
        state.embedded = stored
        state.completed.append(Stage.STORE.value)

    async def _finish(
        self,
        state: RunState,
        recovery: ErrorRecovery,
        store: JobStore,
        started: float,
        resumed_from: Optional[str],
    ) -> PipelineResult:
        job_id = state.job.job_id
        await recovery.clear_checkpoint(job_id)
        current = await store.get_job(job_id)
        metadata = dict(current.metadata if current else {})
        metadata.update(
            {
                "chunk_count": len(state.embedded),
                "warnings": state.warnings,
                "markers_synthesized": bool(
                    state.extracted and state.extracted.markers_synthesized
                ),
            }
        )
        await store.update_job(
            job_id,
            status=JobStatus.READY.value,
            error_message=None,
            document_id=state.document_id,
            metadata=metadata,
        )
        ingestion_jobs_total.labels(status=JobStatus.READY.value).inc()
        logger.info(
            "pipeline_completed",
            document_id=state.document_id,
            chunks=len(state.embedded),
            warnings=len(state.warnings),
            seconds=round(time.perf_counter() - started, 3),
        )
        return PipelineResult(
            job_id=job_id,
            status=JobStatus.READY.value,
            document_id=state.document_id,
            chunk_count=len(state.embedded),
            warnings=list(state.warnings),
            resumed_from=resumed_from,
        )

    async def _fail(
        self,
        state: RunState,
        fault: ProcessingFault,
        recovery: ErrorRecovery,
        store: JobStore,
        started: float,
        resumed_from: Optional[str],
    ) -> PipelineResult:
        job_id = state.job.job_id
        message = user_message(fault)
        logger.error(
            "pipeline_failed",
            fault=fault.kind,
            error=fault.message,
            retryable=fault.retryable,
            completed=state.completed,
            seconds=round(time.perf_counter() - started, 3),
        )

        document_id = state.document_id
        if document_id and "document_id" in state.checkpoint_data:
            # The document is about to be compensated; a retry must create a new one
            state.checkpoint_data.pop("document_id")
            resumable = [s for s in state.completed if s not in (CREATE_DOCUMENT, Stage.STORE.value)]
            last = resumable[-1] if resumable else Stage.DOWNLOAD.value
            try:
                await recovery.save_checkpoint(
                    job_id, create_checkpoint(last, resumable, state.checkpoint_data)
                )
            except ProcessingFault as exc:
                logger.warning("checkpoint_rewind_failed", error=exc.message)

        await recovery.cleanup_failed_processing(
            job_id, document_id, state.completed, error_message=message
        )
        ingestion_jobs_total.labels(status=JobStatus.ERROR.value).inc()
        return PipelineResult(
            job_id=job_id,
            status=JobStatus.ERROR.value,
            document_id=None,
            warnings=list(state.warnings),
            error=message,
            resumed_from=resumed_from,
        )

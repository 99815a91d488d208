"""
Partial-failure policy, checkpoints and compensation for ingestion jobs.

Checkpoints are kept inside the job record's ``metadata`` under the
``checkpoint`` key. Other metadata keys are preserved on every write.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..shared.errors import PartialFailureFault, ProcessingFault
from ..shared.observability import get_logger
from .models import (
    CREATE_DOCUMENT,
    Checkpoint,
    JobStatus,
    ProcessingJob,
    Stage,
    StageOutcome,
)
from .persistence import DOCUMENT_CHUNKS, DOCUMENTS, JobNotFound, JobStore

logger = get_logger(__name__)

CHECKPOINT_KEY = "checkpoint"
CRITICAL_STAGES = {Stage.DOWNLOAD.value, Stage.EXTRACT.value, CREATE_DOCUMENT}
DEFAULT_MIN_EMBED_SUCCESS_RATE = 0.5


@dataclass
class RecoveryDecision:
    should_continue: bool
    reason: str
    warnings: List[str] = field(default_factory=list)
    error: Optional[ProcessingFault] = None


@dataclass
class RecoveryPlan:
    checkpoint: Checkpoint
    resume_stage: Optional[Stage]


@dataclass
class CompensationReport:
    success: bool
    deleted_chunks: int = 0
    deleted_documents: int = 0
    errors: List[str] = field(default_factory=list)


def _failure_messages(failures: List[Any]) -> List[str]:
    messages = []
    for failure in failures:
        error = getattr(failure, "error", None)
        if error is None and isinstance(failure, dict):
            error = failure.get("error")
        messages.append(str(error) if error is not None else "Unknown error")
    return messages


def handle_partial_failure(
    outcome: StageOutcome,
    stage: str,
    min_embed_success_rate: float = DEFAULT_MIN_EMBED_SUCCESS_RATE,
) -> RecoveryDecision:
    """Decide whether a stage's mixed result is good enough to continue.

    - critical stages (download, extract, create_document): any failure aborts
    - embed: continue when the success rate reaches ``min_embed_success_rate``
    - store: continue when at least one item was stored
    - anything else: continue when anything succeeded
    """
    stage = stage.value if isinstance(stage, Stage) else stage
    success_count = len(outcome.successes)
    failure_count = len(outcome.failures)
    total = outcome.total or 0
    rate = outcome.success_rate
    warnings = _failure_messages(outcome.failures)

    if stage in CRITICAL_STAGES and failure_count > 0:
        return RecoveryDecision(
            should_continue=False,
            reason=f"Critical stage {stage} had failures",
            warnings=warnings,
            error=PartialFailureFault(
                f"Failed {stage} stage", outcome.successes, outcome.failures
            ),
        )

    if stage == Stage.EMBED.value:
        summary = f"{success_count}/{total} succeeded ({rate * 100:.1f}%)"
        if rate >= min_embed_success_rate:
            return RecoveryDecision(True, f"Embedding stage: {summary}", warnings)
        return RecoveryDecision(
            should_continue=False,
            reason=f"Embedding stage: only {summary}",
            warnings=warnings,
            error=PartialFailureFault(
                "Too many embedding failures", outcome.successes, outcome.failures
            ),
        )

    if stage == Stage.STORE.value:
        if success_count > 0:
            return RecoveryDecision(
                True, f"Store stage: {success_count}/{total} succeeded", warnings
            )
        return RecoveryDecision(
            should_continue=False,
            reason="Store stage: no chunks stored successfully",
            warnings=warnings,
            error=PartialFailureFault(
                "Failed to store any chunks", outcome.successes, outcome.failures
            ),
        )

    if success_count > 0:
        return RecoveryDecision(
            True, f"Stage {stage}: {success_count} succeeded, {failure_count} failed", warnings
        )
    return RecoveryDecision(
        should_continue=False,
        reason=f"Stage {stage}: all operations failed",
        warnings=warnings,
        error=PartialFailureFault(
            f"Stage {stage} produced no results", outcome.successes, outcome.failures
        ),
    )


def create_checkpoint(
    stage: str, completed: Optional[List[str]] = None, data: Optional[Dict[str, Any]] = None
) -> Checkpoint:
    stage = stage.value if isinstance(stage, Stage) else stage
    return Checkpoint(
        stage=stage,
        completed=[s.value if isinstance(s, Stage) else s for s in (completed or [])],
        data=dict(data or {}),
    )


class ErrorRecovery:
    """Checkpoint persistence and failure handling for one job store."""

    def __init__(self, store: JobStore, clock=time.time):
        self.store = store
        self._clock = clock

    handle_partial_failure = staticmethod(handle_partial_failure)
    create_checkpoint = staticmethod(create_checkpoint)

    async def _require_job(self, job_id: str) -> ProcessingJob:
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def save_checkpoint(self, job_id: str, checkpoint: Checkpoint) -> None:
        job = await self._require_job(job_id)
        metadata = dict(job.metadata)
        metadata[CHECKPOINT_KEY] = checkpoint.to_dict()
        await self.store.update_job(job_id, metadata=metadata, stage=checkpoint.stage)
        logger.info(
            "checkpoint_saved",
            job_id=job_id,
            stage=checkpoint.stage,
            completed=checkpoint.completed,
        )

    async def load_checkpoint(self, job_id: str) -> Optional[Checkpoint]:
        """The saved checkpoint, or None (same as starting from stage one)."""
        job = await self.store.get_job(job_id)
        if job is None:
            return None
        raw = job.metadata.get(CHECKPOINT_KEY)
        if not raw:
            return None
        try:
            return Checkpoint.from_dict(raw)
        except (KeyError, TypeError) as exc:
            logger.warning("checkpoint_unreadable", job_id=job_id, error=str(exc))
            return None

    async def clear_checkpoint(self, job_id: str) -> None:
        job = await self.store.get_job(job_id)
        if job is None or CHECKPOINT_KEY not in job.metadata:
            return
        metadata = {k: v for k, v in job.metadata.items() if k != CHECKPOINT_KEY}
        await self.store.update_job(job_id, metadata=metadata)
        logger.debug("checkpoint_cleared", job_id=job_id)

    async def recover_from_checkpoint(self, job_id: str) -> Optional[RecoveryPlan]:
        """Mark a job processing again and report where it should resume.

        Returns None when the job has no checkpoint.
        """
        checkpoint = await self.load_checkpoint(job_id)
        if checkpoint is None:
            return None
        job = await self._require_job(job_id)
        await self.store.update_job(
            job_id,
            status=JobStatus.PROCESSING.value,
            error_message=None,
            retry_count=job.retry_count + 1,
        )
        resume = checkpoint.next_stage()
        logger.info(
            "recovering_from_checkpoint",
            job_id=job_id,
            completed=checkpoint.completed,
            resume_stage=resume.value if resume else None,
            retry_count=job.retry_count + 1,
        )
        return RecoveryPlan(checkpoint=checkpoint, resume_stage=resume)

    async def cleanup_failed_processing(
        self,
        job_id: str,
        document_id: Optional[str],
        completed_stages: List[str],
        error_message: Optional[str] = None,
    ) -> CompensationReport:
        """Undo side effects of a failed run and mark the job as errored.

        Any document id that was assigned is compensated, even when its
        insert never confirmed: a timed-out write may still have landed.
        Chunks are deleted before their document. Individual failures are
        collected in the report, never raised.
        """
        report = CompensationReport(success=True)

        if document_id:
            try:
                report.deleted_chunks = await self.store.delete_records(
                    DOCUMENT_CHUNKS, document_id
                )
            except Exception as exc:
                report.errors.append(f"Failed to delete chunks: {exc}")
            try:
                report.deleted_documents = await self.store.delete_records(
                    DOCUMENTS, document_id
                )
            except Exception as exc:
                report.errors.append(f"Failed to delete document: {exc}")

        message = error_message or (
            "Processing failed after completing stages: " + ", ".join(completed_stages)
            if completed_stages
            else "Processing failed"
        )
        try:
            await self.store.update_job(
                job_id, status=JobStatus.ERROR.value, error_message=message
            )
        except Exception as exc:
            report.errors.append(f"Failed to update status: {exc}")

        report.success = not report.errors
        log = logger.info if report.success else logger.warning
        log(
            "failed_processing_cleaned_up",
            job_id=job_id,
            document_id=document_id,
            deleted_chunks=report.deleted_chunks,
            deleted_documents=report.deleted_documents,
            errors=report.errors,
        )
        return report

    async def reset_stuck_document(
        self, job_id: str, reason: str = "Document stuck in processing"
    ) -> bool:
        """Move a job back to pending so it can be submitted again."""
        try:
            await self.store.update_job(
                job_id, status=JobStatus.PENDING.value, error_message=reason
            )
        except JobNotFound:
            logger.warning("stuck_document_missing", job_id=job_id)
            return False
        logger.info("stuck_document_reset", job_id=job_id, reason=reason)
        return True

    async def find_stuck_jobs(self, threshold_seconds: float) -> List[ProcessingJob]:
        cutoff = self._clock() - threshold_seconds
        jobs = await self.store.list_jobs(status=JobStatus.PROCESSING.value)
        return [job for job in jobs if job.updated_at < cutoff]

    async def reset_stuck_jobs(
        self, threshold_seconds: float, exclude: Optional[List[str]] = None
    ) -> List[str]:
        """Reset every job stuck in processing longer than the threshold.

        ``exclude`` lists job ids known to be running in this process.
        """
        skip = set(exclude or [])
        reset = []
        for job in await self.find_stuck_jobs(threshold_seconds):
            if job.job_id in skip:
                continue
            minutes = int(threshold_seconds // 60)
            if await self.reset_stuck_document(
                job.job_id,
                reason=f"Reset after being stuck in processing for over {minutes} minutes",
            ):
                reset.append(job.job_id)
        if reset:
            logger.warning("stuck_jobs_reset", count=len(reset), job_ids=reset)
        return reset

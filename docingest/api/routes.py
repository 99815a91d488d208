"""Processing endpoints."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse

from ..ingestion.concurrency import CapacityExceeded
from ..ingestion.persistence import JobNotFound
from ..ingestion.recovery import CHECKPOINT_KEY
from ..ingestion.service import IngestionService, Queued
from ..shared.errors import ValidationFault
from ..shared.observability import get_logger
from .models import (
    CapacityExceededResponse,
    CircuitBreakerResetResponse,
    ClearQueueResponse,
    CreateJobRequest,
    JobResponse,
    LoadResponse,
    ProcessRequest,
    ProcessResponse,
    QueueStatusResponse,
    ResetStuckRequest,
    ResetStuckResponse,
)

logger = get_logger(__name__)

router = APIRouter(tags=["processing"])


def _service(request: Request) -> IngestionService:
    return request.app.state.service


def _job_response(job) -> JobResponse:
    return JobResponse(
        job_id=job.job_id,
        source_path=job.source_path,
        source_kind=job.source_kind,
        status=job.status,
        stage=job.stage,
        retry_count=job.retry_count,
        error_message=job.error_message,
        document_id=job.document_id,
        title=job.title,
        updated_at=job.updated_at,
        has_checkpoint=CHECKPOINT_KEY in job.metadata,
    )


@router.post("/documents", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def create_document_job(body: CreateJobRequest, request: Request):
    job = await _service(request).create_job(
        body.source_path,
        title=body.title,
        owner_id=body.owner_id,
        source_kind=body.source_kind,
    )
    return _job_response(job)


@router.get("/documents/{job_id}", response_model=JobResponse)
async def get_document_job(job_id: str, request: Request):
    job = await _service(request).store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return _job_response(job)


@router.post(
    "/documents/{job_id}/process",
    response_model=ProcessResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={503: {"model": CapacityExceededResponse, "description": "Capacity exceeded"}},
)
async def process_document(job_id: str, request: Request, body: Optional[ProcessRequest] = None):
    service = _service(request)
    metadata = body.metadata if body else {}
    try:
        result = await service.submit_job(job_id, metadata)
    except JobNotFound:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    except ValidationFault as exc:
        raise HTTPException(status_code=409, detail=exc.message)

    if isinstance(result, CapacityExceeded):
        return JSONResponse(
            status_code=result.status_code,
            content=CapacityExceededResponse(**result.to_response()).model_dump(),
            headers={"Retry-After": str(result.retry_after)},
        )

    if isinstance(result, Queued):
        return ProcessResponse(
            job_id=job_id,
            status="queued",
            queue_position=result.placement.queue_position,
            estimated_wait_seconds=result.placement.estimated_wait_seconds,
            load=LoadResponse(**service.get_load()),
        )

    return ProcessResponse(
        job_id=job_id,
        status="admitted",
        load=LoadResponse(**result.load.to_dict()),
    )


@router.get("/processing/load", response_model=LoadResponse)
async def processing_load(request: Request):
    return LoadResponse(**_service(request).get_load())


@router.get("/processing/queue", response_model=QueueStatusResponse)
async def processing_queue(request: Request):
    return QueueStatusResponse(**_service(request).get_queue_status())


@router.post("/processing/queue/clear", response_model=ClearQueueResponse)
async def clear_processing_queue(request: Request):
    cleared = _service(request).queue.clear()
    return ClearQueueResponse(cleared=cleared)


@router.post("/processing/reset-stuck", response_model=ResetStuckResponse)
async def reset_stuck(request: Request, body: Optional[ResetStuckRequest] = None):
    threshold = body.threshold_seconds if body else None
    reset = await _service(request).reset_stuck_jobs(threshold)
    return ResetStuckResponse(reset=reset, count=len(reset))


@router.post(
    "/processing/circuit-breakers/{operation_name}/reset",
    response_model=CircuitBreakerResetResponse,
)
async def reset_circuit_breaker(operation_name: str, request: Request):
    retry = _service(request).retry
    if operation_name not in retry.get_stats():
        raise HTTPException(status_code=404, detail=f"No circuit breaker for {operation_name}")
    retry.reset_circuit_breaker(operation_name)
    logger.info("circuit_breaker_reset_requested", operation=operation_name)
    return CircuitBreakerResetResponse(
        operation=operation_name, state=retry.get_stats()[operation_name]["state"]
    )

# HTTP request/response models

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class LoadResponse(BaseModel):
    active: int
    max: int
    available: int
    utilization_percent: int


class CreateJobRequest(BaseModel):
    source_path: str
    title: Optional[str] = None
    owner_id: Optional[str] = None
    source_kind: Optional[str] = Field(default=None, pattern="^(pdf|audio|text)$")


class JobResponse(BaseModel):
    job_id: str
    source_path: str
    source_kind: str
    status: str
    stage: Optional[str] = None
    retry_count: int = 0
    error_message: Optional[str] = None
    document_id: Optional[str] = None
    title: Optional[str] = None
    updated_at: float
    has_checkpoint: bool = False


class ProcessRequest(BaseModel):
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProcessResponse(BaseModel):
    success: bool = True
    job_id: str
    status: str  # admitted | queued
    queue_position: Optional[int] = None
    estimated_wait_seconds: Optional[int] = None
    load: LoadResponse


class CapacityExceededResponse(BaseModel):
    status: int = 503
    success: bool = False
    error: str
    retry_after: int
    load: LoadResponse


class QueuedJobInfo(BaseModel):
    job_id: str
    enqueued_at: float
    wait_seconds: float


class QueueStatusResponse(BaseModel):
    queue_length: int
    is_draining: bool
    load: LoadResponse
    running_jobs: List[str]
    queued_jobs: List[QueuedJobInfo]


class ResetStuckRequest(BaseModel):
    threshold_seconds: Optional[float] = Field(default=None, gt=0)


class ResetStuckResponse(BaseModel):
    reset: List[str]
    count: int


class ClearQueueResponse(BaseModel):
    cleared: int


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
    circuit_breakers: Dict[str, str] = Field(default_factory=dict)


class CircuitBreakerResetResponse(BaseModel):
    operation: str
    state: str

# Prometheus metrics for the ingestion pipeline

import time
from typing import Callable

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from .logging import get_logger

logger = get_logger(__name__)

# ===== Request metrics =====
http_requests_total = Counter(
    "docingest_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "docingest_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ===== Admission metrics =====
ingestion_active_jobs = Gauge(
    "docingest_active_jobs",
    "Ingestion jobs currently running",
)

ingestion_queue_depth = Gauge(
    "docingest_queue_depth",
    "Ingestion jobs waiting for capacity",
)

ingestion_submissions_total = Counter(
    "docingest_submissions_total",
    "Job submissions by admission outcome",
    ["outcome"],  # admitted, queued, rejected
)

# ===== Pipeline metrics =====
ingestion_jobs_total = Counter(
    "docingest_jobs_total",
    "Finished ingestion jobs",
    ["status"],  # ready, error
)

ingestion_stage_duration_seconds = Histogram(
    "docingest_stage_duration_seconds",
    "Pipeline stage duration in seconds",
    ["stage", "status"],
    buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

embedding_requests_total = Counter(
    "docingest_embedding_requests_total",
    "Embedding service calls",
    ["mode", "status"],  # mode: batch, single
)

chunks_stored_total = Counter(
    "docingest_chunks_stored_total",
    "Chunks written to persistence",
)

# ===== Resilience metrics =====
retry_attempts_total = Counter(
    "docingest_retry_attempts_total",
    "Retries scheduled after a retryable fault",
    ["operation", "fault"],
)

circuit_breaker_state = Gauge(
    "docingest_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["operation"],
)

timeouts_fired_total = Counter(
    "docingest_timeouts_fired_total",
    "Timeouts that fired before the guarded operation finished",
)

service_info = Info("docingest_service", "Ingestion service information")


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Middleware to collect HTTP request metrics for Prometheus.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        # Route template keeps job ids out of label values
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        http_request_duration_seconds.labels(
            method=method, endpoint=endpoint
        ).observe(elapsed)

        http_requests_total.labels(
            method=method,
            endpoint=endpoint,
            status=response.status_code,
        ).inc()

        return response


def setup_metrics(version: str, environment: str) -> None:
    service_info.info({"version": version, "environment": environment})
    logger.info("prometheus_metrics_enabled", environment=environment)


def get_metrics() -> bytes:
    """
    Get current metrics in Prometheus exposition format.

    Returns:
        Metrics as bytes
    """
    return generate_latest()

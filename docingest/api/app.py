# FastAPI application exposing the ingestion service

import uuid
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from starlette.responses import Response

from .. import __version__
from ..ingestion.service import IngestionService
from ..shared.config import get_settings
from ..shared.observability import (
    PrometheusMiddleware,
    get_logger,
    get_metrics,
    set_correlation_id,
    setup_metrics,
)
from . import routes
from .models import HealthResponse

logger = get_logger(__name__)


def create_app(service: IngestionService, reaper_interval_seconds: float = 0) -> FastAPI:
    """
    Build the HTTP app around an existing service.

    Args:
        service: Ingestion service the routes delegate to
        reaper_interval_seconds: Start the stuck-job sweep at startup when > 0
    """
    app = FastAPI(title="docingest", version=__version__)
    app.state.service = service
    app.add_middleware(PrometheusMiddleware)
    app.include_router(routes.router)
    setup_metrics(service.config.app.version, get_settings().env)

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        corr_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
        set_correlation_id(corr_id)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = corr_id
        return response

    @app.on_event("startup")
    async def startup_event():
        if reaper_interval_seconds > 0:
            service.start_reaper(reaper_interval_seconds)
        logger.info("ingestion_api_started", max_concurrent_jobs=service.gate.max_concurrent_jobs)

    @app.on_event("shutdown")
    async def shutdown_event():
        await service.shutdown()

    @app.get("/health", response_model=HealthResponse)
    async def health():
        breakers = {
            name: stats["state"] for name, stats in service.retry.get_stats().items()
        }
        degraded = any(state != "closed" for state in breakers.values())
        return HealthResponse(
            status="degraded" if degraded else "healthy",
            timestamp=datetime.now(timezone.utc).isoformat(),
            version=__version__,
            circuit_breakers=breakers,
        )

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint"""
        return Response(content=get_metrics(), media_type="text/plain; version=0.0.4")

    return app

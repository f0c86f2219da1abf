"""Insight API service.

FastAPI application exposing conversational questions over wide-event
logs and the embedding pipeline.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from insight.models import ErrorResponse, HealthResponse
from insight.orchestrators.search_orchestrator import get_orchestrator, reset_orchestrator
from insight.routers import embeddings as embeddings_router
from insight.routers import search as search_router
from libs.caching.redis_client import close_redis_client
from libs.caching.redis_client import health_check as redis_health_check
from libs.common.errors import (
    AggregationUnsatisfiable,
    CacheUnavailable,
    InsightError,
    ProviderTimeout,
    RetrievalFailure,
)
from libs.common.logging import configure_logging
from libs.common.metrics import get_outcome_counters
from libs.common.settings import get_settings

SERVICE_NAME = "insight"
SERVICE_VERSION = "0.1.0"

logger = structlog.get_logger(__name__)

ERROR_STATUS = {
    RetrievalFailure: status.HTTP_404_NOT_FOUND,
    AggregationUnsatisfiable: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ProviderTimeout: status.HTTP_504_GATEWAY_TIMEOUT,
    CacheUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for_error(exc: InsightError) -> int:
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return code
    # ProviderRejected and any other provider failure
    return status.HTTP_502_BAD_GATEWAY


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    orchestrator = None
    if not settings.is_test:
        orchestrator = await get_orchestrator()
        orchestrator.sessions.start_cleanup_task()
        logger.info("Insight API started", environment=settings.app_env)
    yield
    if orchestrator is not None:
        await orchestrator.sessions.stop_cleanup_task()
    await close_redis_client()
    # the cached orchestrator holds the closed Redis client
    reset_orchestrator()
    logger.info("Insight API stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Insight API",
        description="Conversational questions over wide-event logs",
        version=SERVICE_VERSION,
        default_response_class=ORJSONResponse,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.is_development else [],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next: Any) -> Any:
        start_time = time.time()
        request_id = f"req_{int(start_time * 1000000)}"
        request.state.request_id = request_id

        logger.info(
            "Request started",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        response = await call_next(request)
        logger.info(
            "Request completed",
            request_id=request_id,
            status_code=response.status_code,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(InsightError)
    async def insight_error_handler(request: Request, exc: InsightError) -> ORJSONResponse:
        request_id = getattr(request.state, "request_id", None)
        status_code = status_for_error(exc)
        logger.warning(
            "Request failed",
            request_id=request_id,
            error_code=exc.error_code,
            error=str(exc),
            status_code=status_code,
        )
        body = ErrorResponse(error_code=exc.error_code, message=str(exc), request_id=request_id)
        return ORJSONResponse(status_code=status_code, content=body.model_dump())

    @app.get("/healthz", response_model=HealthResponse, tags=["Health"])
    async def health_check() -> HealthResponse:
        """Liveness check with session backend reachability and outcome counters."""
        redis_ok = await redis_health_check() if settings.session_backend == "redis" else True
        return HealthResponse(
            status="healthy" if redis_ok else "unhealthy",
            service=SERVICE_NAME,
            version=SERVICE_VERSION,
            timestamp=time.time(),
            details={
                "session_backend": settings.session_backend,
                "redis": redis_ok,
                "counters": {name: asdict(stats) for name, stats in get_outcome_counters().snapshot().items()},
            },
        )

    app.include_router(search_router.router, prefix="/api")
    app.include_router(embeddings_router.router, prefix="/api")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "insight.main:app",
        host="0.0.0.0",
        port=8000,
        reload=get_settings().is_development,
    )

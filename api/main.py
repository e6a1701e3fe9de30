"""Lexcase API service.

FastAPI application exposing conversation turns over HTTP. The turn
orchestrator and its in-memory state live for the lifetime of the process
and are created in the application lifespan.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from api.models import HealthResponse
from api.orchestrators.turn_orchestrator import TurnOrchestrator
from api.routers import conversations as conversations_router
from libs.common.errors import ConcurrencyExceeded, RateLimitExceeded, ValidationError
from libs.common.log_config import configure_logging
from libs.common.settings import get_settings

logger = structlog.get_logger(__name__)

VERSION = "0.1.0"


def create_app(orchestrator: Optional[TurnOrchestrator] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        orchestrator: Pre-built orchestrator (tests); built from settings otherwise
    """
    settings = get_settings()
    configure_logging(settings.log_level, json=settings.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.orchestrator = orchestrator or TurnOrchestrator.from_settings(settings)
        await app.state.orchestrator.init()
        logger.info("Lexcase API started", app_env=settings.app_env)
        try:
            yield
        finally:
            await app.state.orchestrator.shutdown()
            logger.info("Lexcase API stopped")

    app = FastAPI(
        title="Lexcase Legal Assistant API",
        description="Case-aware legal question answering over court decisions",
        version=VERSION,
        default_response_class=ORJSONResponse,
        debug=settings.debug,
        lifespan=lifespan,
    )

    cors_origins = ["*"] if settings.is_development else settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=False if settings.is_development else True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests with timing and structured data."""
        start_time = time.time()
        request_id = f"req_{int(start_time * 1000000)}"
        request.state.request_id = request_id

        logger.info(
            "Request started",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed",
                request_id=request_id,
                error=str(e),
                process_time_ms=round((time.time() - start_time) * 1000, 2),
                exc_info=True,
            )
            raise

        logger.info(
            "Request completed",
            request_id=request_id,
            status_code=response.status_code,
            process_time_ms=round((time.time() - start_time) * 1000, 2),
        )
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        logger.info("Question rejected", reason=str(exc))
        return ORJSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error_code": exc.error_code, "message": exc.user_message},
        )

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        retry_after = max(1, int(exc.retry_after))
        return ORJSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "error_code": exc.error_code,
                "message": exc.user_message,
                "retry_after_seconds": retry_after,
            },
            headers={"Retry-After": str(retry_after)},
        )

    @app.exception_handler(ConcurrencyExceeded)
    async def concurrency_handler(request: Request, exc: ConcurrencyExceeded):
        return ORJSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"error_code": exc.error_code, "message": exc.user_message},
        )

    app.include_router(conversations_router.router, prefix="/api", tags=["Conversations"])

    @app.get("/healthz", response_model=HealthResponse, tags=["Health"])
    async def health_check(request: Request) -> HealthResponse:
        """Liveness check with in-memory state counters.

        Example:
            ```bash
            curl http://localhost:8000/healthz
            ```
        """
        current = getattr(request.app.state, "orchestrator", None)
        if current is None:
            return HealthResponse(status="not_ready", version=VERSION)
        return HealthResponse(
            status="healthy",
            version=VERSION,
            details={
                "conversations": str(len(current.store)),
                "active_requests": str(current.limiter.active_requests),
            },
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    # For local development only
    uvicorn.run(
        "api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )

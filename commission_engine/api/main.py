"""
FastAPI application for the commission settlement engine.

``create_app`` assembles the service: payment intake from the gateway,
creator withdrawals, privileged admin operations and the monitoring
endpoints. Domain errors carry their own HTTP status and are rendered by a
single handler; every request is tagged with an ID bound into the
structlog context and counted in Prometheus by route template.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from commission_engine import __version__
from commission_engine.config import Settings, get_settings
from commission_engine.core.errors import SettlementError
from commission_engine.database.connection import close_db, init_db
from commission_engine.monitoring.logging import setup_logging
from commission_engine.monitoring.metrics import metrics

from .routes import admin_router, monitoring_router, payment_router, withdrawal_router

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """Open the database on startup, dispose of the pool on shutdown."""
    settings: Settings = app.state.settings
    logger.info("application_startup", app_env=settings.app_env, version=__version__)

    await init_db()
    yield

    await close_db()
    logger.info("application_shutdown")


def _route_template(request: Request) -> str:
    # Path parameters would explode label cardinality
    route = request.scope.get("route")
    return getattr(route, "path", "unmatched")


async def track_request(request: Request, call_next: Any) -> Response:
    """Bind a request ID into the log context and record timing."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )
    started = time.perf_counter()
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
    finally:
        elapsed = time.perf_counter() - started
        metrics.record_request(request.method, _route_template(request), status_code, elapsed)
        logger.info("request_completed", status_code=status_code, duration_seconds=round(elapsed, 4))
        structlog.contextvars.clear_contextvars()


async def handle_settlement_error(request: Request, exc: SettlementError) -> JSONResponse:
    """Render a domain error with its own status code."""
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "settlement_error",
        error_type=type(exc).__name__,
        message=exc.message,
        status_code=exc.status_code,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": type(exc).__name__,
            "message": exc.message,
            "details": exc.details,
        },
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception", error_type=type(exc).__name__)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "InternalError",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    """
    Build the ASGI application.

    Args:
        settings: Overrides the environment-derived settings

    Returns:
        FastAPI: configured application
    """
    settings = settings or get_settings()
    setup_logging(settings)

    application = FastAPI(
        title="Commission Settlement Engine",
        description=(
            "Payment attribution and commission settlement: exactly-once payment ledger, "
            "tiered creator and CMO commissions, withdrawal approvals and reconciliation."
        ),
        version=__version__,
        lifespan=lifespan,
    )
    application.state.settings = settings

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    application.middleware("http")(track_request)

    application.add_exception_handler(SettlementError, handle_settlement_error)
    application.add_exception_handler(Exception, handle_unexpected_error)

    for router in (payment_router, withdrawal_router, admin_router, monitoring_router):
        application.include_router(router)

    @application.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        return {
            "service": settings.app_name,
            "version": __version__,
            "environment": settings.app_env,
            "docs": "/docs",
        }

    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "commission_engine.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.api_workers,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()

"""
FastAPI application.

Serves the three confirmation channels (gateway return redirects, gateway
IPNs, operator confirmation), the campaign ledger view, reconciliation and
monitoring endpoints.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from donation_ledger import __version__
from donation_ledger.config import Settings, get_settings
from donation_ledger.core.ledger import LedgerImmutabilityError
from donation_ledger.database.connection import close_db, init_db
from donation_ledger.integrations.notifications import drain_notifications
from donation_ledger.monitoring.logging import setup_logging

from .routes import (
    admin_router,
    campaign_router,
    donation_router,
    get_processor,
    monitoring_router,
)

REQUEST_ID_HEADER = "X-Request-ID"

setup_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    settings: Settings = app.state.settings
    logger.info(
        "application_startup",
        lock_backend=settings.lock_backend,
        signature_verification=settings.signature_verification_enabled,
    )
    if not settings.signature_verification_enabled:
        logger.warning("gateway_signature_verification_disabled")

    await init_db()

    yield

    logger.info("application_shutdown")

    # Confirmed payments may still have notifications in flight
    await drain_notifications(timeout=5)

    close_lock = getattr(get_processor().lock, "close", None)
    if close_lock is not None:
        await close_lock()

    await close_db()


async def bind_request_context(request: Request, call_next: Any) -> Response:
    """Bind a request ID (propagated from the caller when present) to every log line."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )
    start_time = time.time()

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error("request_failed", error=str(e), duration_seconds=time.time() - start_time)
        raise
    finally:
        structlog.contextvars.clear_contextvars()

    response.headers[REQUEST_ID_HEADER] = request_id
    logger.info(
        "request_completed",
        request_id=request_id,
        status_code=response.status_code,
        duration_seconds=time.time() - start_time,
    )
    return response


async def ledger_violation_handler(request: Request, exc: LedgerImmutabilityError) -> JSONResponse:
    logger.critical("ledger_immutability_violation", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Ledger rows are append-only"},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    """
    Build the API application.

    Args:
        settings: Optional settings (defaults to the cached application settings)

    Returns:
        FastAPI: Configured application
    """
    settings = settings or get_settings()

    application = FastAPI(
        title="Donation Ledger",
        description=(
            "Payment confirmation and ledger reconciliation for a donation platform: "
            "gateway signature verification, exactly-once confirmation, an append-only "
            "campaign ledger and excess-fund reallocation."
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
    application.middleware("http")(bind_request_context)

    application.add_exception_handler(LedgerImmutabilityError, ledger_violation_handler)
    application.add_exception_handler(Exception, unhandled_exception_handler)

    for router in (donation_router, campaign_router, admin_router, monitoring_router):
        application.include_router(router)

    @application.get("/", tags=["root"])
    async def root() -> Dict[str, Any]:
        """Service information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "environment": settings.app_env,
            "gateways": ["vnpay", "momo"],
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return application


app = create_app()


def run() -> None:
    """Console entry point."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "donation_ledger.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.api_workers,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()

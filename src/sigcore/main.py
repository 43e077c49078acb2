"""
FastAPI application entry point.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator
from uuid import uuid4

import httpx
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sigcore.config import get_settings
from sigcore.conversations.phone_lines import get_phone_line_resolver
from sigcore.conversations.router import router as conversations_router
from sigcore.dependencies import get_vault
from sigcore.outbound.dispatcher import OutboundWebhookDispatcher
from sigcore.outbound.events import CompositeNotifier
from sigcore.outbound.router import router as subscriptions_router
from sigcore.outbound.tenant import TenantStatusForwarder
from sigcore.providers.interface import ProviderError
from sigcore.providers.registry import get_provider_registry
from sigcore.realtime.hub import RealtimeHub
from sigcore.realtime.router import router as realtime_router
from sigcore.shared.database import get_database_manager
from sigcore.shared.exceptions import (
    AppError,
    ConflictError,
    InvalidSignatureError,
    NotFoundError,
    SyncConflictError,
    UnknownWebhookTokenError,
    ValidationError,
)
from sigcore.shared.logging import correlation_id_var, get_logger, setup_logging
from sigcore.sync.orchestrator import SyncOrchestrator
from sigcore.sync.router import router as sync_router
from sigcore.webhooks.idempotency import IdempotencyStore
from sigcore.webhooks.rate_limit import SlidingWindowRateLimiter
from sigcore.webhooks.router import router as webhooks_router

import sigcore.conversations.models  # noqa: F401
import sigcore.integrations.models  # noqa: F401
import sigcore.outbound.models  # noqa: F401
import sigcore.webhooks.models  # noqa: F401

logger = get_logger(__name__)

_ERROR_CODES: dict[type[AppError], str] = {
    UnknownWebhookTokenError: "UNKNOWN_WEBHOOK_TOKEN",
    InvalidSignatureError: "INVALID_SIGNATURE",
    SyncConflictError: "SYNC_IN_PROGRESS",
    NotFoundError: "NOT_FOUND",
    ValidationError: "INVALID_REQUEST",
    ConflictError: "CONFLICT",
}


def _error_body(exc: AppError) -> dict[str, object]:
    code = next((c for cls, c in _ERROR_CODES.items() if isinstance(exc, cls)), "APP_ERROR")
    return {"detail": {"code": code, "message": str(exc)}}


async def _idempotency_cleanup_loop() -> None:
    """Purge old idempotency ledger rows on a fixed interval."""
    settings = get_settings()
    db = get_database_manager()

    logger.info(
        "Idempotency cleanup loop starting",
        extra={
            "interval_seconds": settings.idempotency_cleanup_interval_seconds,
            "retention_days": settings.idempotency_retention_days,
        },
    )

    while True:
        try:
            async with db.session() as session:
                deleted = await IdempotencyStore(session).cleanup(settings.idempotency_retention_days)
            if deleted:
                logger.info("Idempotency ledger cleaned", extra={"deleted": deleted})
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Idempotency cleanup tick failed")

        await asyncio.sleep(settings.idempotency_cleanup_interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    setup_logging()
    settings = get_settings()
    db = get_database_manager()
    registry = get_provider_registry()

    logger.info("Application starting", extra={"env": settings.app_env})

    http_client = httpx.AsyncClient(timeout=settings.outbound_timeout_seconds)
    dispatcher = OutboundWebhookDispatcher(db.session, http_client, settings)
    forwarder = TenantStatusForwarder(db.session, http_client, settings)
    orchestrator = SyncOrchestrator(db.session, registry, get_vault(), get_phone_line_resolver(), settings)
    realtime = RealtimeHub()

    app.state.webhook_rate_limiter = SlidingWindowRateLimiter(
        limit=settings.webhook_rate_limit_requests,
        window_seconds=settings.webhook_rate_limit_window_seconds,
    )
    app.state.dispatcher = dispatcher
    app.state.realtime = realtime
    app.state.notifier = CompositeNotifier([realtime, dispatcher, forwarder])
    app.state.sync_orchestrator = orchestrator

    cleanup_task: asyncio.Task[None] | None = None
    if settings.idempotency_cleanup_enabled:
        cleanup_task = asyncio.create_task(_idempotency_cleanup_loop())
        logger.info("Idempotency cleanup enabled; background task created")

    yield

    logger.info("Shutting down application")

    if cleanup_task is not None:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
        logger.info("Idempotency cleanup task stopped")

    await orchestrator.shutdown()
    await realtime.close_all()
    await http_client.aclose()
    await registry.aclose()
    await db.close()
    logger.info("Application shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="sigcore API",
        description="Provider-agnostic telephony event pipeline",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # Map domain exceptions to HTTP responses
    @app.exception_handler(NotFoundError)
    async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=_error_body(exc))

    @app.exception_handler(ValidationError)
    async def _validation(_: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=_error_body(exc))

    @app.exception_handler(ConflictError)
    async def _conflict(_: Request, exc: ConflictError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=_error_body(exc))

    @app.exception_handler(ProviderError)
    async def _provider(_: Request, exc: ProviderError) -> JSONResponse:
        logger.warning("Provider call failed", extra={"error": str(exc), "error_code": exc.error_code})
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"detail": {"code": "PROVIDER_ERROR", "message": "Provider request failed"}},
        )

    # Request validation (FastAPI/Pydantic) -> consistent 422 payload
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = []
        for error in exc.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            errors.append(
                {
                    "field": field,
                    "message": error["msg"],
                    "type": error["type"],
                }
            )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "errors": errors,
                }
            },
        )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = request.headers.get("x-request-id") or str(uuid4())
        token = correlation_id_var.set(correlation_id)
        try:
            response = await call_next(request)
        finally:
            correlation_id_var.reset(token)
        response.headers["X-Request-ID"] = correlation_id
        return response

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(webhooks_router)
    app.include_router(conversations_router)
    app.include_router(sync_router)
    app.include_router(subscriptions_router)
    app.include_router(realtime_router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    return app


app = create_app()

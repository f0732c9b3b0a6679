"""FastAPI application entry-point for the StageFlow webhook API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from stageflow_api import __version__
from stageflow_api.config import APISettings, PlatformEnv, load_api_settings
from stageflow_api.dependencies import (
    dispose_engine,
    dispose_resources,
    init_engine,
    init_resources,
)
from stageflow_api.errors import StageflowError
from stageflow_api.middleware.auth import AuthenticationMiddleware
from stageflow_api.middleware.logging import RequestLoggingMiddleware
from stageflow_api.middleware.prometheus import PrometheusMiddleware
from stageflow_api.middleware.trace_context import TraceContextMiddleware
from stageflow_api.routers import billing, health, webhooks
from stageflow_api.routers import metrics as metrics_router

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Refuse to run staging or production with the development token key.
    - Initialise the async database engine, creating tables in dev or
      local SQLite mode.
    - Build the shared HTTP client, dispatcher, retry queue and inbound
      processor.

    On shutdown the HTTP client is closed and the engine pool disposed.
    """
    settings: APISettings = load_api_settings()

    if settings.structured_logging:
        from stageflow_api.middleware.json_formatter import configure_structured_logging

        configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    if settings.platform_env in (PlatformEnv.STAGING, PlatformEnv.PRODUCTION) and settings.uses_dev_auth_secret:
        raise RuntimeError(
            f"API_AUTH_TOKEN_SECRET must be set in {settings.platform_env.value} mode. Refusing to start."
        )
    if not settings.stripe_webhook_secret.get_secret_value():
        logger.warning("API_STRIPE_WEBHOOK_SECRET is not set; inbound Stripe events will be rejected")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")

    # Idempotent; production schemas are managed by migrations.
    if settings.platform_env == PlatformEnv.DEV or is_local:
        from stageflow_core.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-migration")

    init_resources(settings)
    logger.info(
        "Webhook services initialised (retries %s)",
        "enabled" if settings.webhook_retry_enabled else "disabled",
    )

    yield

    await dispose_resources()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="StageFlow API",
        description="Signed outbound webhooks and idempotent Stripe event processing.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (the last one added runs outermost) ----------------------
    # CORS must wrap authentication: preflight requests carry no bearer token.

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(AuthenticationMiddleware, token_secret=settings.auth_token_secret)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "Accept"],
    )
    app.add_middleware(TraceContextMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")
    app.include_router(webhooks.router, prefix="/api/v1")

    # Outside /api/v1: Prometheus scrape and readiness probe.
    app.include_router(metrics_router.router)
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(StageflowError)
    async def stageflow_error_handler(request: Request, exc: StageflowError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.detail)
        else:
            logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        message = str(errors[0].get("msg", "Invalid request")) if errors else "Invalid request"
        return JSONResponse(status_code=400, content={"detail": message})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(PermissionError)
    async def permission_error_handler(request: Request, exc: PermissionError) -> JSONResponse:
        logger.warning("PermissionError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=403, content={"detail": "Permission denied"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn stageflow_api.main:app``.
app = create_app()

"""FastAPI application entry-point for the billing control plane."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from billing_core.errors import (
    BillingError,
    BusinessNotFoundError,
    InvalidTransitionError,
    PlanNotFoundError,
    PriceUnavailableError,
)
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from api import __version__
from api.config import APISettings, PlatformEnv, load_api_settings
from api.dependencies import (
    dispose_engine,
    dispose_notifier,
    init_engine,
    init_notifier,
    init_processor,
)
from api.middleware.auth import AuthenticationMiddleware
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.prometheus import PrometheusMiddleware
from api.routers import alerts, health, onboarding, plans, webhooks
from api.routers import metrics as metrics_router

logger = logging.getLogger(__name__)

# Billing errors that escape a router map to these status codes.
_BILLING_ERROR_STATUS: tuple[tuple[type[BillingError], int], ...] = (
    (PlanNotFoundError, 404),
    (BusinessNotFoundError, 404),
    (InvalidTransitionError, 409),
    (PriceUnavailableError, 409),
)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create database tables if they do not exist (dev convenience;
      production should use Alembic migrations).
    - Initialise the Stripe client factory and the notifier.

    On shutdown:
    - Close the notifier's HTTP pool.
    - Dispose the database engine connection pool.
    """
    settings: APISettings = load_api_settings()

    if settings.structured_logging:
        from api.middleware.json_formatter import JSONFormatter

        root_logger = logging.getLogger()
        root_logger.handlers.clear()
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        root_logger.addHandler(handler)
        root_logger.setLevel(logging.INFO)
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    if settings.platform_env == PlatformEnv.DEV or is_local:
        from billing_core.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(
            "Database tables ensured (%s)",
            "local SQLite" if is_local else "dev auto-migration",
        )

    init_processor(settings)
    logger.info("Stripe client factory initialised")

    if settings.notification_api_key.get_secret_value():
        init_notifier(settings)
        logger.info("Member notifications enabled (%s)", settings.notification_api_url)
    else:
        logger.info("Member notifications disabled: no API key configured")

    yield

    await dispose_notifier()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: APISettings | None = None) -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = settings or load_api_settings()

    app = FastAPI(
        title="Billing API",
        description="Webhook reconciliation and dynamic pricing for membership plans.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Correlation-ID",
            "Accept",
        ],
    )
    app.add_middleware(AuthenticationMiddleware, secret=settings.auth_token_secret)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(webhooks.router, prefix="/api/v1")
    app.include_router(plans.router, prefix="/api/v1")
    app.include_router(alerts.router, prefix="/api/v1")
    app.include_router(onboarding.router, prefix="/api/v1")

    # Prometheus scrape target, outside /api/v1 versioning.
    app.include_router(metrics_router.router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
        for error_type, status_code in _BILLING_ERROR_STATUS:
            if isinstance(exc, error_type):
                return JSONResponse(status_code=status_code, content={"detail": str(exc)})
        if isinstance(exc, ValueError):
            return JSONResponse(status_code=400, content={"detail": str(exc)})
        logger.error("Unhandled billing error on %s: %s", request.url.path, exc, exc_info=exc)
        return JSONResponse(status_code=500, content={"detail": "Billing operation failed"})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal database error"},
        )

    return app


# Module-level application instance used by ``uvicorn api.main:app``.
app = create_app()

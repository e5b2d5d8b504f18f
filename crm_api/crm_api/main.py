"""FastAPI application entry-point for the clinic CRM billing service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from billing_core.errors import (
    AuthenticationFailure,
    ExternalServiceError,
    NotFound,
    PermissionDenied,
    SignatureInvalid,
    SubscriptionRequired,
    TrustCoreError,
)
from billing_core.state.sqlite_adapter import create_local_tables
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from crm_api import __version__
from crm_api.config import CRMSettings, load_settings
from crm_api.dependencies import (
    dispose_engine,
    dispose_trust_core,
    get_session_factory,
    init_engine,
    init_trust_core,
)
from crm_api.middleware.auth import AuthenticationMiddleware
from crm_api.middleware.json_formatter import configure_structured_logging
from crm_api.middleware.logging import RequestLoggingMiddleware
from crm_api.routers import api_keys, audit, billing, entitlement, health, integrations
from crm_api.security import TokenManager
from crm_api.services.grace_sweeper import GracePeriodSweeper

logger = logging.getLogger(__name__)

# HTTP status for each trust-core error family; anything else is a 500.
_ERROR_STATUS: dict[type[TrustCoreError], int] = {
    AuthenticationFailure: 401,
    PermissionDenied: 403,
    NotFound: 404,
    SubscriptionRequired: 402,
    SignatureInvalid: 400,
    ExternalServiceError: 502,
}


def _status_for(exc: TrustCoreError) -> int:
    for error_type, status_code in _ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Switch to JSON logs when structured logging is enabled.
    - Initialise the async database engine (creating tables for SQLite;
      PostgreSQL deployments use the Alembic migrations).
    - Build the trust-core singletons and start the grace-period sweeper.

    On shutdown the sweeper is stopped and the engine pool disposed.
    """
    settings: CRMSettings = app.state.settings

    if settings.structured_logging:
        configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local SQLite" if is_local else "postgres")
    if is_local:
        await create_local_tables(engine)

    vault = init_trust_core(settings, get_session_factory())

    sweeper: GracePeriodSweeper | None = None
    if settings.sweep_enabled:
        sweeper = GracePeriodSweeper(vault, interval_seconds=settings.sweep_interval_seconds)
        await sweeper.start()

    yield

    if sweeper is not None:
        await sweeper.stop()
    dispose_trust_core()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: CRMSettings | None = None) -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = settings or load_settings()

    app = FastAPI(
        title="Clinic CRM Billing API",
        description="API keys, Stripe subscriptions and entitlement for clinic tenants.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # -- Middleware (outermost last) -----------------------------------------

    app.add_middleware(
        AuthenticationMiddleware,
        token_manager=TokenManager(
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            ttl_seconds=settings.token_ttl_seconds,
        ),
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Correlation-ID",
            "X-Tenant-ID",
            "X-API-Key",
            "Accept",
        ],
    )

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")
    app.include_router(api_keys.router, prefix="/api/v1")
    app.include_router(integrations.router, prefix="/api/v1")
    app.include_router(entitlement.router, prefix="/api/v1")
    app.include_router(audit.router, prefix="/api/v1")

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(TrustCoreError)
    async def trust_core_error_handler(request: Request, exc: TrustCoreError) -> JSONResponse:
        status_code = _status_for(exc)
        # Internal detail stays in the log; the client gets the generic phrase.
        log = logger.error if status_code >= 500 else logger.warning
        log("%s on %s: %s", type(exc).__name__, request.url.path, exc)
        headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
        return JSONResponse(
            status_code=status_code,
            content={"detail": exc.public_message, "error_code": exc.error_code},
            headers=headers,
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request", "error_code": "invalid_request"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal database error", "error_code": "database_error"},
        )

    return app


# Module-level application instance used by ``uvicorn crm_api.main:app``.
app = create_app()

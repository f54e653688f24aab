"""FastAPI application entry-point for the metered news service."""

from __future__ import annotations

import logging
import secrets
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from gate_core.errors import (
    ConfigurationError,
    CustomerLinkConflictError,
    FavoritesUnavailableError,
    ProviderUnavailableError,
    SubscriptionCacheUnavailableError,
)
from gate_core.state.database import ensure_schema
from sqlalchemy.exc import SQLAlchemyError

from gate_api import __version__
from gate_api.config import APISettings, PlatformEnv, load_api_settings
from gate_api.dependencies import (
    dispose_engine,
    dispose_gate,
    get_session_factory,
    init_engine,
    init_gate,
)
from gate_api.middleware.identity import IdentityMiddleware
from gate_api.middleware.json_formatter import install_json_logging
from gate_api.middleware.logging import RequestLoggingMiddleware
from gate_api.routers import access, billing, favorites, health, news
from gate_api.security import SessionTokenVerifier

logger = logging.getLogger(__name__)


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
    - Build the ledger, subscription cache, access gate, content source
      and favorites store.

    On shutdown:
    - Wait for in-flight read recordings.
    - Dispose the database engine connection pool.
    """
    settings: APISettings = load_api_settings()

    if settings.structured_logging:
        install_json_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    # Auto-create tables in dev or local SQLite mode (idempotent).
    if settings.platform_env == PlatformEnv.DEV or is_local:
        await ensure_schema(engine)

    gate = init_gate(settings, get_session_factory())
    logger.info(
        "Access gate initialised (free_reads_per_day=%d, anonymous_reads_per_day=%d, timeout=%.3fs)",
        gate.policy.daily_limit,
        gate.policy.anonymous_allowance,
        gate.policy.timeout_seconds,
    )

    yield

    # Shutdown.
    await dispose_gate()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def _build_verifier(settings: APISettings) -> SessionTokenVerifier:
    secret = settings.session_secret.get_secret_value()
    if not secret:
        # Settings validation already refused this outside dev.
        secret = f"dev-{secrets.token_hex(32)}"
        logger.warning(
            "API_SESSION_SECRET not set; generated random per-process dev secret. "
            "Session tokens will not survive process restarts."
        )
    return SessionTokenVerifier(secret)


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()
    # A bad limit must stop the process before it serves traffic.
    settings.gate_policy()

    app = FastAPI(
        title="Newsgate API",
        description="Metered access to ranked news with subscription entitlement.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost last) -----------------------------------------

    app.add_middleware(IdentityMiddleware, verifier=_build_verifier(settings))
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Correlation-ID",
            "Accept",
        ],
    )

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(access.router, prefix="/api/v1")
    app.include_router(news.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")
    app.include_router(favorites.router, prefix="/api/v1")

    # Infrastructure endpoints outside versioning.
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(CustomerLinkConflictError)
    async def link_conflict_handler(request: Request, exc: CustomerLinkConflictError) -> JSONResponse:
        logger.warning("Customer link conflict on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=409, content={"detail": "Billing account conflict"})

    @app.exception_handler(ProviderUnavailableError)
    async def provider_error_handler(request: Request, exc: ProviderUnavailableError) -> JSONResponse:
        logger.error("Payment provider error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=502, content={"detail": "Payment provider unavailable"})

    @app.exception_handler(SubscriptionCacheUnavailableError)
    async def cache_unavailable_handler(request: Request, exc: SubscriptionCacheUnavailableError) -> JSONResponse:
        logger.error("Subscription cache unavailable on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "Subscription state unavailable"})

    @app.exception_handler(FavoritesUnavailableError)
    async def favorites_unavailable_handler(request: Request, exc: FavoritesUnavailableError) -> JSONResponse:
        logger.error("Favorites unavailable on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "Favorites unavailable"})

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
        logger.error("Configuration error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": "Service misconfigured"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal database error"},
        )

    return app


# Module-level application instance used by ``uvicorn gate_api.main:app``.
app = create_app()

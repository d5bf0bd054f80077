"""ReviewPilot API application.

``create_app`` wires middleware, routers and exception handlers; the
lifespan owns the database engine and the shared outbound HTTP client.
Run with ``uvicorn api.main:app``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from review_core.state.database import create_schema
from sqlalchemy.exc import SQLAlchemyError

from api import __version__
from api.config import APISettings, PlatformEnv, load_api_settings
from api.dependencies import (
    dispose_engine,
    dispose_http_client,
    init_engine,
    init_http_client,
)
from api.errors import NotConnectedError, UpstreamAPIError
from api.middleware.auth import AuthenticationMiddleware, get_token_manager
from api.middleware.logging import RequestLoggingMiddleware, configure_logging
from api.routers import (
    alerts,
    audit,
    billing,
    cron,
    google_oauth,
    health,
    locations,
    organization,
    reports,
    reviews,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings: APISettings = load_api_settings()

    if settings.structured_logging:
        configure_logging(structured=True)

    # Builds the signing config now so a missing JWT_SECRET outside dev
    # fails at startup rather than on the first request.
    get_token_manager()

    engine = init_engine(settings)
    is_sqlite = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s)",
        "sqlite" if is_sqlite else settings.database_url.split("@")[-1][:40],
    )
    if settings.platform_env == PlatformEnv.DEV or is_sqlite:
        await create_schema(engine)
        logger.info("Database schema ensured")

    init_http_client(settings)

    yield

    await dispose_http_client()
    await dispose_engine()
    logger.info("ReviewPilot API stopped")


def _register_exception_handlers(app: FastAPI) -> None:
    """Map uncaught domain and infrastructure errors to safe JSON responses."""

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(PermissionError)
    async def permission_error_handler(request: Request, exc: PermissionError) -> JSONResponse:
        logger.warning("PermissionError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=403, content={"detail": "Permission denied"})

    @app.exception_handler(NotConnectedError)
    async def not_connected_handler(request: Request, exc: NotConnectedError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": "Google account is not connected"})

    @app.exception_handler(UpstreamAPIError)
    async def upstream_error_handler(request: Request, exc: UpstreamAPIError) -> JSONResponse:
        logger.warning("Upstream failure on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=502, content={"detail": "Upstream service request failed"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error on %s: %s", request.url.path, exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="ReviewPilot API",
        description="Review monitoring, alerting and reply management for local businesses.",
        version=__version__,
        lifespan=lifespan,
    )

    # Starlette runs the last-added middleware first: logging wraps auth.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "Accept"],
    )
    app.add_middleware(AuthenticationMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    for module in (health, organization, google_oauth, locations, reviews, alerts, reports, audit, billing, cron):
        app.include_router(module.router, prefix=API_PREFIX)
    app.include_router(organization.onboarding_router, prefix=API_PREFIX)

    _register_exception_handlers(app)
    return app


app = create_app()

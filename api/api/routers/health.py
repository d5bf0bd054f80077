"""Public liveness endpoint for load balancers and uptime monitors."""

from __future__ import annotations

import logging
import time
from typing import Any

from fastapi import APIRouter
from pydantic import SecretStr
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api import __version__
from api.config import APISettings
from api.dependencies import PublicSessionDep, SettingsDep
from api.schemas import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _probe_database(session: AsyncSession) -> float | None:
    """Round-trip time of ``SELECT 1`` in milliseconds, or ``None`` on failure."""
    started = time.perf_counter()
    try:
        await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Database health probe failed: %s", exc)
        return None
    return round((time.perf_counter() - started) * 1000, 2)


def _is_set(value: SecretStr) -> bool:
    return bool(value.get_secret_value())


def _configured_integrations(settings: APISettings) -> dict[str, bool]:
    return {
        "google": bool(settings.google_client_id) and _is_set(settings.google_client_secret),
        "openai": _is_set(settings.openai_api_key),
        "sendgrid": _is_set(settings.sendgrid_api_key),
        "twilio": bool(settings.twilio_account_sid) and _is_set(settings.twilio_auth_token),
        "lemonsqueezy": _is_set(settings.lemonsqueezy_api_key),
    }


@router.get("/health", response_model=HealthResponse)
async def health(session: PublicSessionDep, settings: SettingsDep) -> dict[str, Any]:
    """Always 200; ``status`` is ``degraded`` when the database is unreachable."""
    latency = await _probe_database(session)
    return {
        "status": "healthy" if latency is not None else "degraded",
        "version": __version__,
        "db": "ok" if latency is not None else "error",
        "db_latency_ms": latency,
        "integrations": _configured_integrations(settings),
    }

"""API router modules for the ReviewPilot service."""

from __future__ import annotations

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

__all__ = [
    "alerts",
    "audit",
    "billing",
    "cron",
    "google_oauth",
    "health",
    "locations",
    "organization",
    "reports",
    "reviews",
]

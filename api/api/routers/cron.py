"""Scheduler entry points.

These routes bypass bearer authentication and are instead guarded by the
shared ``X-Cron-Secret`` header.  They operate across all organizations.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query

from api.dependencies import (
    EmailSenderDep,
    PublicSessionDep,
    SettingsDep,
    SyncServiceDep,
    WhatsAppSenderDep,
    require_cron_secret,
)
from api.services.alert_dispatcher import AlertDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


@router.post("/sync-reviews")
async def sync_reviews(sync_service: SyncServiceDep) -> dict[str, Any]:
    """Sync every syncable location of every organization once."""
    return await sync_service.sync_all_once()


@router.post("/alerts/outbox")
async def drain_alert_outbox(
    session: PublicSessionDep,
    settings: SettingsDep,
    email_sender: EmailSenderDep,
    whatsapp_sender: WhatsAppSenderDep,
    limit: int = Query(default=100, ge=1, le=1000),
) -> dict[str, Any]:
    """Retry alert fan-outs that were not delivered during sync."""
    dispatcher = AlertDispatcher(
        session,
        settings=settings,
        email_sender=email_sender,
        whatsapp_sender=whatsapp_sender,
    )
    return await dispatcher.drain_outbox(limit=limit)


@router.post("/daily-digest")
async def daily_digest(
    session: PublicSessionDep,
    settings: SettingsDep,
    email_sender: EmailSenderDep,
    whatsapp_sender: WhatsAppSenderDep,
) -> dict[str, int]:
    dispatcher = AlertDispatcher(
        session,
        settings=settings,
        email_sender=email_sender,
        whatsapp_sender=whatsapp_sender,
    )
    return await dispatcher.send_daily_digests()

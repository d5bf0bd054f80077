"""Alert preference endpoints and a test-alert trigger."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from review_core.state.repository import (
    AlertPreferenceRepository,
    LocationRepository,
    OrganizationRepository,
    UserRepository,
)

from api.dependencies import AlertDispatcherDep, EmailDep, SessionDep, TenantDep, UserDep
from api.middleware.rbac import Permission, Role, require_permission
from api.schemas import AlertPreferenceRequest, AlertPreferenceResponse
from api.services.alert_dispatcher import AlertPayload
from api.services.audit_service import AuditAction, AuditService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/alerts", tags=["alerts"])


@router.get("/preferences", response_model=list[AlertPreferenceResponse])
async def get_preferences(
    session: SessionDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    _role: Role = Depends(require_permission(Permission.READ)),
) -> list[Any]:
    """Return the caller's alert preferences, one per location."""
    return await AlertPreferenceRepository(session, tenant_id).list_for_user(user_id)


@router.put("/preferences", response_model=AlertPreferenceResponse)
async def update_preferences(
    body: AlertPreferenceRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    email: EmailDep,
    _role: Role = Depends(require_permission(Permission.WRITE)),
) -> Any:
    """Create or update the caller's preference for one location.

    The WhatsApp number is only kept while WhatsApp is enabled.
    """
    if await LocationRepository(session, tenant_id).get(body.location_id) is None:
        raise HTTPException(status_code=404, detail=f"Location {body.location_id} not found")
    if body.whatsapp_enabled and not body.whatsapp_number:
        raise HTTPException(status_code=422, detail="whatsapp_number is required when WhatsApp is enabled")

    await UserRepository(session).ensure(user_id, email=email)
    pref = await AlertPreferenceRepository(session, tenant_id).upsert(
        user_id=user_id,
        location_id=body.location_id,
        email_enabled=body.email_enabled,
        whatsapp_enabled=body.whatsapp_enabled,
        whatsapp_number=body.whatsapp_number,
        star_threshold=body.star_threshold,
        frequency=body.frequency,
    )
    await OrganizationRepository(session, tenant_id).set_flags("has_set_alerts")
    await AuditService(session, tenant_id=tenant_id, user_id=user_id).log(
        AuditAction.ALERTS_PREFERENCES_UPDATED,
        target_id=body.location_id,
        frequency=body.frequency,
        star_threshold=body.star_threshold,
    )
    return pref


@router.post("/test")
async def send_test_alert(
    session: SessionDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    dispatcher: AlertDispatcherDep,
    _role: Role = Depends(require_permission(Permission.WRITE)),
) -> dict[str, int]:
    """Send a sample low-rating alert for the caller's first preference location."""
    prefs = await AlertPreferenceRepository(session, tenant_id).list_for_user(user_id)
    if not prefs:
        raise HTTPException(status_code=404, detail="No alert preferences configured")

    location = await LocationRepository(session, tenant_id).get(prefs[0].location_id)
    payload = AlertPayload(
        organization_id=tenant_id,
        location_id=prefs[0].location_id,
        location_name=location.name if location is not None else None,
        platform="google",
        rating=2,
        author="Test User",
        content="This is a test alert from ReviewPilot.",
    )
    sent = await dispatcher.trigger_new_review_alerts(payload)
    logger.info("Test alert for org=%s user=%s: %d sent", tenant_id, user_id, sent)
    return {"sent": sent}

"""Billing endpoints: subscription info, LemonSqueezy checkout and webhooks."""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from review_core.state.repository import OrganizationRepository

from api.dependencies import (
    EmailDep,
    HttpClientDep,
    PublicSessionDep,
    SessionDep,
    SettingsDep,
    TenantDep,
    UserDep,
)
from api.errors import UpstreamAPIError
from api.middleware.rbac import Permission, Role, require_permission
from api.schemas import CheckoutResponse
from api.services.billing_service import BillingService, resolve_organization_id, verify_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


@router.get("/subscription")
async def get_subscription(
    session: SessionDep,
    settings: SettingsDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.READ)),
) -> dict[str, Any]:
    """Return the organization's subscription status and whether it grants access."""
    return await BillingService(session, settings, tenant_id=tenant_id).get_subscription_info()


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    session: SessionDep,
    settings: SettingsDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    email: EmailDep,
    http_client: HttpClientDep,
    _role: Role = Depends(require_permission(Permission.ADMIN)),
) -> dict[str, str]:
    """Create a hosted LemonSqueezy checkout for the organization.

    Raises
    ------
    HTTPException(409)
        If the subscription is already active.
    HTTPException(502)
        If LemonSqueezy rejects the request.
    HTTPException(503)
        If billing is not configured.
    """
    service = BillingService(session, settings, tenant_id=tenant_id, http_client=http_client)
    try:
        return await service.create_checkout(user_id=user_id, email=email)
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except UpstreamAPIError as exc:
        logger.warning("Checkout creation failed for org=%s: %s", tenant_id, exc)
        raise HTTPException(status_code=502, detail="Checkout creation failed")


@router.post("/webhooks")
async def lemonsqueezy_webhook(
    request: Request,
    session: PublicSessionDep,
    settings: SettingsDep,
) -> dict[str, str]:
    """Handle incoming LemonSqueezy webhook events.

    This endpoint bypasses bearer authentication; the ``X-Signature``
    header (hex HMAC-SHA256 of the raw body) is verified instead.
    """
    secret = settings.lemonsqueezy_webhook_secret.get_secret_value()
    if not secret:
        return {"status": "billing_disabled"}

    body = await request.body()
    signature = request.headers.get("x-signature", "")
    if not signature or not verify_webhook_signature(body, signature, secret):
        logger.warning("LemonSqueezy webhook signature verification failed")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        event = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")

    organization_id = resolve_organization_id(event)
    if organization_id is None:
        logger.warning("LemonSqueezy webhook without organization_id; ignoring")
        return {"status": "ignored"}
    if await OrganizationRepository(session, organization_id).get() is None:
        logger.warning("LemonSqueezy webhook for unknown org=%s; ignoring", organization_id)
        return {"status": "ignored"}

    return await BillingService(session, settings, tenant_id=organization_id).handle_webhook_event(event)

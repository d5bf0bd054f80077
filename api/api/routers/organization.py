"""Organization endpoints: bootstrap, settings, members and onboarding."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from api.dependencies import EmailDep, SessionDep, TenantDep, UserDep
from api.middleware.rbac import Permission, Role, require_permission
from api.schemas import (
    MemberAddRequest,
    OnboardingResponse,
    OrganizationCreateRequest,
    OrganizationSettingsRequest,
)
from api.services.organization_service import OrganizationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/organization", tags=["organization"])
onboarding_router = APIRouter(tags=["organization"])


@router.post("", status_code=201)
async def create_organization(
    session: SessionDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    email: EmailDep,
    body: OrganizationCreateRequest | None = None,
) -> dict[str, Any]:
    """Create the caller's organization with the caller as owner.  Idempotent."""
    service = OrganizationService(session, tenant_id, user_id=user_id)
    return await service.bootstrap(user_id=user_id, email=email, name=body.name if body else None)


@router.get("")
async def get_organization(
    session: SessionDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.READ)),
) -> dict[str, Any]:
    org = await OrganizationService(session, tenant_id).get()
    if org is None:
        raise HTTPException(status_code=404, detail="Organization not found")
    return org


@router.put("/settings")
async def update_settings(
    body: OrganizationSettingsRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    _role: Role = Depends(require_permission(Permission.ADMIN)),
) -> dict[str, Any]:
    """Update name, industry and timezone.

    Raises
    ------
    HTTPException(422)
        If the timezone is not a valid IANA name.
    """
    service = OrganizationService(session, tenant_id, user_id=user_id)
    try:
        return await service.update_settings(name=body.name, industry=body.industry, timezone=body.timezone)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.get("/members")
async def list_members(
    session: SessionDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.READ)),
) -> list[dict[str, Any]]:
    return await OrganizationService(session, tenant_id).list_members()


@router.post("/members", status_code=201)
async def add_member(
    body: MemberAddRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_MEMBERS)),
) -> dict[str, Any]:
    """Add a user to the organization by email, creating the user if needed."""
    service = OrganizationService(session, tenant_id, user_id=user_id)
    return await service.add_member(email=body.email, role=body.role)


@onboarding_router.get("/onboarding", response_model=OnboardingResponse)
async def onboarding_status(
    session: SessionDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.READ)),
) -> dict[str, Any]:
    """Return the onboarding flags and the next step to show."""
    return await OrganizationService(session, tenant_id).onboarding_status()

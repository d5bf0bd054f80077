"""Business location endpoints: list, discover on Google, attach, remove."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from review_core.state.repository import LocationRepository, OrganizationRepository

from api.dependencies import (
    GBPClientDep,
    OAuthClientDep,
    SessionDep,
    TenantDep,
    UserDep,
    VaultDep,
)
from api.errors import UpstreamAPIError
from api.middleware.rbac import Permission, Role, require_permission
from api.schemas import LocationAttachRequest, LocationResponse
from api.services.audit_service import AuditAction, AuditService
from api.services.token_manager import GoogleTokenManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/locations", tags=["locations"])


@router.get("", response_model=list[LocationResponse])
async def list_locations(
    session: SessionDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.READ)),
) -> list[Any]:
    """List the organization's non-deleted locations."""
    return await LocationRepository(session, tenant_id).list_active()


@router.get("/current", response_model=LocationResponse | None)
async def current_location(
    session: SessionDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.READ)),
) -> Any:
    """Return the earliest attached location, or ``null``."""
    return await LocationRepository(session, tenant_id).first_active()


@router.get("/google")
async def list_google_locations(
    session: SessionDep,
    tenant_id: TenantDep,
    vault: VaultDep,
    oauth_client: OAuthClientDep,
    gbp_client: GBPClientDep,
    _role: Role = Depends(require_permission(Permission.READ)),
) -> list[dict[str, Any]]:
    """List every location visible to the connected Google account.

    Raises
    ------
    HTTPException(409)
        If the organization has no usable Google credential.
    HTTPException(502)
        If Google rejects a listing call.
    """
    manager = GoogleTokenManager(session, vault=vault, oauth_client=oauth_client)
    access_token = await manager.get_valid_access_token(tenant_id)
    if access_token is None:
        raise HTTPException(status_code=409, detail="Google account is not connected")

    out: list[dict[str, Any]] = []
    try:
        for account in await gbp_client.list_accounts(access_token):
            account_name = account.get("name")
            if not account_name:
                continue
            for location in await gbp_client.list_locations(access_token, account_name):
                out.append({**location, "account": account_name})
    except UpstreamAPIError as exc:
        logger.warning("Google location listing failed for org=%s: %s", tenant_id, exc)
        raise HTTPException(status_code=502, detail="Google Business Profile request failed")
    return out


@router.post("", response_model=LocationResponse, status_code=201)
async def attach_location(
    body: LocationAttachRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    _role: Role = Depends(require_permission(Permission.WRITE)),
) -> Any:
    """Attach a Google location.  Re-attaching a removed location restores it."""
    await OrganizationRepository(session, tenant_id).ensure()
    location = await LocationRepository(session, tenant_id).attach(
        external_id=body.external_id,
        name=body.name,
        address=body.address,
    )
    await OrganizationRepository(session, tenant_id).set_flags("has_selected_location")
    await AuditService(session, tenant_id=tenant_id, user_id=user_id).log(
        AuditAction.LOCATION_ADDED,
        target_id=location.id,
        external_id=body.external_id,
    )
    return location


@router.delete("/{location_id}")
async def delete_location(
    location_id: str,
    session: SessionDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    _role: Role = Depends(require_permission(Permission.ADMIN)),
) -> dict[str, Any]:
    """Soft-delete a location; its reviews drop out of listings."""
    if not await LocationRepository(session, tenant_id).soft_delete(location_id):
        raise HTTPException(status_code=404, detail=f"Location {location_id} not found")
    await AuditService(session, tenant_id=tenant_id, user_id=user_id).log(
        AuditAction.LOCATION_DELETED,
        target_id=location_id,
    )
    return {"deleted": True, "id": location_id}

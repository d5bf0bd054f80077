"""Google account connection: OAuth consent, callback and disconnect.

The callback is public (Google redirects the browser without our bearer
token), so the organization travels in the OAuth ``state`` parameter as a
short-lived signed session token.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from review_core.state.repository import CredentialRepository

from api.dependencies import (
    OAuthClientDep,
    PublicSessionDep,
    SessionDep,
    SettingsDep,
    TenantDep,
    UserDep,
    VaultDep,
)
from api.errors import UpstreamAPIError
from api.middleware.auth import get_token_manager
from api.middleware.rbac import Permission, Role, require_permission
from api.services.audit_service import AuditAction, AuditService
from api.services.token_manager import GoogleTokenManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/google", tags=["google"])

# Lifetime of the signed OAuth state.
_STATE_TTL_SECONDS = 600


@router.get("/oauth/start")
async def start_oauth(
    tenant_id: TenantDep,
    user_id: UserDep,
    oauth_client: OAuthClientDep,
    _role: Role = Depends(require_permission(Permission.WRITE)),
) -> dict[str, str]:
    """Return the Google consent URL for the caller's organization."""
    if not oauth_client.configured:
        raise HTTPException(status_code=503, detail="Google integration is not configured")
    state = get_token_manager().generate_token(user_id, tenant_id, ttl_seconds=_STATE_TTL_SECONDS)
    return {"url": oauth_client.build_authorization_url(state)}


@router.get("/oauth/callback")
async def oauth_callback(
    session: PublicSessionDep,
    settings: SettingsDep,
    vault: VaultDep,
    oauth_client: OAuthClientDep,
    code: Annotated[str | None, Query()] = None,
    state: Annotated[str | None, Query()] = None,
) -> RedirectResponse:
    """Complete the OAuth flow and store the encrypted credential.

    Raises
    ------
    HTTPException(400)
        If ``code`` or ``state`` is missing, or the state does not verify.
    HTTPException(502)
        If Google rejects the code exchange.
    """
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state")
    try:
        claims = get_token_manager().validate_token(state)
    except PermissionError as exc:
        logger.warning("Rejected OAuth callback with invalid state: %s", exc)
        raise HTTPException(status_code=400, detail="Invalid OAuth state")

    organization_id = claims.tenant_id
    try:
        token_response = await oauth_client.exchange_code(code)
    except UpstreamAPIError as exc:
        logger.warning("Google code exchange failed for org=%s: %s", organization_id, exc)
        raise HTTPException(status_code=502, detail="Google token exchange failed")

    manager = GoogleTokenManager(session, vault=vault, oauth_client=oauth_client)
    await manager.store_token_response(organization_id, token_response)
    await AuditService(session, tenant_id=organization_id, user_id=claims.sub).log(
        AuditAction.GOOGLE_CONNECTED,
        target_id=organization_id,
        scope=token_response.get("scope"),
    )
    logger.info("Google account connected for org=%s", organization_id)
    return RedirectResponse(url=f"{settings.app_url.rstrip('/')}/onboarding", status_code=302)


@router.post("/disconnect")
async def disconnect(
    session: SessionDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    _role: Role = Depends(require_permission(Permission.ADMIN)),
) -> dict[str, Any]:
    """Delete the organization's stored Google credential."""
    deleted = await CredentialRepository(session, tenant_id).delete()
    if deleted:
        await AuditService(session, tenant_id=tenant_id, user_id=user_id).log(
            AuditAction.GOOGLE_DISCONNECTED,
            target_id=tenant_id,
        )
    return {"disconnected": deleted}

"""Audit trail endpoint (owners only)."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query

from api.dependencies import SessionDep, TenantDep
from api.middleware.rbac import Permission, require_permission
from api.services.audit_service import AuditService

router = APIRouter(prefix="/audit", tags=["audit"], dependencies=[Depends(require_permission(Permission.ADMIN))])


@router.get("")
async def list_audit_entries(
    session: SessionDep,
    tenant_id: TenantDep,
    action: str | None = Query(default=None, description="Exact action tag, e.g. review.replied."),
    since: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[dict[str, Any]]:
    """Most recent entries first."""
    return await AuditService(session, tenant_id=tenant_id).history(
        action=action, since=since, limit=limit, offset=offset
    )

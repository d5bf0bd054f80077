"""Reporting endpoints: review KPIs and CSV exports."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response

from api.dependencies import SessionDep, TenantDep
from api.middleware.rbac import Permission, Role, require_permission
from api.services.reporting_service import ReportingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reports", tags=["reports"])


@router.get("/kpis")
async def get_kpis(
    session: SessionDep,
    tenant_id: TenantDep,
    days: int = Query(default=30, ge=1, le=365),
    _role: Role = Depends(require_permission(Permission.READ)),
) -> dict[str, Any]:
    """Return review volume, rating and response KPIs for the last *days*."""
    return await ReportingService(session, tenant_id).kpis(days)


@router.get("/export")
async def export_report(
    session: SessionDep,
    tenant_id: TenantDep,
    report_type: str = Query(default="reviews", alias="type", description="reviews or replies"),
    _role: Role = Depends(require_permission(Permission.READ)),
) -> Response:
    """Download reviews or posted replies as CSV."""
    try:
        content, media_type, filename = await ReportingService(session, tenant_id).export_csv(report_type)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

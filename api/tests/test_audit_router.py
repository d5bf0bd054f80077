"""Tests for the audit trail service and endpoint."""

from __future__ import annotations

import pytest
from api.services.audit_service import AuditAction, AuditService
from review_core.state.database import session_scope


async def _record(session_factory, tenant_id: str = "org-1") -> None:
    async with session_scope(session_factory) as session:
        audit = AuditService(session, tenant_id=tenant_id, user_id="user-owner")
        await audit.log(AuditAction.LOCATION_ADDED, target_id="loc-1", name="Downtown")
        await audit.log(AuditAction.SETTINGS_UPDATED, target_id=tenant_id)


class TestAuditService:
    @pytest.mark.asyncio
    async def test_history_serializes_entries(self, db_session, seeded_org) -> None:
        audit = AuditService(db_session, tenant_id="org-1", user_id="user-owner")
        entry_id = await audit.log(AuditAction.REVIEW_REPLIED, target_id="rev-1", length=42)

        (entry,) = await audit.history()

        assert entry["id"] == entry_id
        assert entry["action"] == "review.replied"
        assert entry["user_id"] == "user-owner"
        assert entry["metadata"] == {"length": 42}
        assert entry["created_at"] is not None

    @pytest.mark.asyncio
    async def test_no_details_stores_null_metadata(self, db_session, seeded_org) -> None:
        audit = AuditService(db_session, tenant_id="org-1")
        await audit.log("review.synced")

        (entry,) = await audit.history()
        assert entry["metadata"] is None
        assert entry["user_id"] is None


class TestAuditEndpoint:
    @pytest.mark.asyncio
    async def test_lists_entries(self, client, seeded_org, session_factory) -> None:
        await _record(session_factory)

        resp = await client.get("/api/v1/audit")

        assert resp.status_code == 200
        assert {entry["action"] for entry in resp.json()} == {"location.added", "settings.updated"}

    @pytest.mark.asyncio
    async def test_filters_by_action(self, client, seeded_org, session_factory) -> None:
        await _record(session_factory)

        resp = await client.get("/api/v1/audit", params={"action": "location.added"})

        body = resp.json()
        assert len(body) == 1
        assert body[0]["target_id"] == "loc-1"
        assert body[0]["metadata"] == {"name": "Downtown"}

    @pytest.mark.asyncio
    async def test_other_organization_entries_hidden(self, client, seeded_org, session_factory) -> None:
        await _record(session_factory, tenant_id="org-2")

        resp = await client.get("/api/v1/audit")
        assert resp.json() == []

    @pytest.mark.asyncio
    async def test_limit_bounds(self, client, seeded_org) -> None:
        resp = await client.get("/api/v1/audit", params={"limit": 0})
        assert resp.status_code == 422

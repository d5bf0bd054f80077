"""Integration tests for organization bootstrap, settings, members and onboarding."""

from __future__ import annotations

import pytest
from api.services.organization_service import onboarding_next_path, validate_timezone
from review_core.state.database import session_scope
from review_core.state.tables import MembershipTable, OrganizationTable
from sqlalchemy import select


class TestOnboardingNextPath:
    @pytest.mark.parametrize(
        "flags,expected",
        [
            ({}, "/onboarding/connect"),
            ({"has_connected_google": True}, "/onboarding/location"),
            ({"has_connected_google": True, "has_selected_location": True}, "/onboarding/alerts"),
            (
                {"has_connected_google": True, "has_selected_location": True, "has_set_alerts": True},
                "/app",
            ),
        ],
    )
    def test_first_unfinished_step(self, flags, expected) -> None:
        org = OrganizationTable(
            id="org-1",
            name="Joe's Pizza",
            has_connected_google=flags.get("has_connected_google", False),
            has_selected_location=flags.get("has_selected_location", False),
            has_set_alerts=flags.get("has_set_alerts", False),
        )
        assert onboarding_next_path(org) == expected

    def test_missing_organization_goes_to_app(self) -> None:
        assert onboarding_next_path(None) == "/app"


class TestValidateTimezone:
    def test_known_zone(self) -> None:
        assert validate_timezone("America/New_York") == "America/New_York"

    @pytest.mark.parametrize("name", ["Mars/Olympus", "not a zone"])
    def test_unknown_zone_raises(self, name) -> None:
        with pytest.raises(ValueError, match="Unknown timezone"):
            validate_timezone(name)


class TestBootstrap:
    @pytest.mark.asyncio
    async def test_creates_org_and_owner_membership(self, client, session_factory) -> None:
        resp = await client.post("/api/v1/organization", json={"name": "Joe's Pizza"})

        assert resp.status_code == 201
        assert resp.json()["id"] == "org-1"
        assert resp.json()["name"] == "Joe's Pizza"
        async with session_factory() as session:
            memberships = (await session.execute(select(MembershipTable))).scalars().all()
        assert [(m.user_id, m.role) for m in memberships] == [("user-1", "owner")]

    @pytest.mark.asyncio
    async def test_repeat_does_not_duplicate_or_downgrade(self, client, session_factory) -> None:
        await client.post("/api/v1/organization", json={"name": "Joe's Pizza"})
        resp = await client.post("/api/v1/organization", json={"name": "Something Else"})

        assert resp.status_code == 201
        assert resp.json()["name"] == "Joe's Pizza"
        async with session_factory() as session:
            memberships = (await session.execute(select(MembershipTable))).scalars().all()
        assert len(memberships) == 1
        assert memberships[0].role == "owner"

    @pytest.mark.asyncio
    async def test_get_unknown_organization_is_404(self, client) -> None:
        resp = await client.get("/api/v1/organization")
        assert resp.status_code == 404


class TestSettings:
    @pytest.mark.asyncio
    async def test_update_settings(self, client, seeded_org) -> None:
        resp = await client.put(
            "/api/v1/organization/settings",
            json={"name": "  Joe's Pizza & Pasta ", "industry": "restaurant", "timezone": "Europe/Rome"},
        )

        assert resp.status_code == 200
        assert resp.json()["name"] == "Joe's Pizza & Pasta"
        assert resp.json()["timezone"] == "Europe/Rome"
        assert (await client.get("/api/v1/organization")).json()["industry"] == "restaurant"

    @pytest.mark.asyncio
    async def test_invalid_timezone_is_422(self, client, seeded_org) -> None:
        resp = await client.put(
            "/api/v1/organization/settings",
            json={"name": "Joe's Pizza", "timezone": "Nowhere/Special"},
        )
        assert resp.status_code == 422


class TestMembers:
    @pytest.mark.asyncio
    async def test_add_and_list_members(self, client, seeded_org) -> None:
        resp = await client.post(
            "/api/v1/organization/members",
            json={"email": "Cook@JoesPizza.example", "role": "viewer"},
        )

        assert resp.status_code == 201
        assert resp.json() == {
            "user_id": "user_cook@joespizza.example",
            "email": "cook@joespizza.example",
            "role": "viewer",
        }
        members = (await client.get("/api/v1/organization/members")).json()
        assert {m["email"]: m["role"] for m in members} == {
            "owner@joespizza.example": "owner",
            "cook@joespizza.example": "viewer",
        }

    @pytest.mark.asyncio
    async def test_existing_user_is_reused(self, client, seeded_org) -> None:
        resp = await client.post(
            "/api/v1/organization/members",
            json={"email": "owner@joespizza.example", "role": "member"},
        )
        assert resp.json()["user_id"] == "user-1"

    @pytest.mark.asyncio
    async def test_invalid_role_is_422(self, client, seeded_org) -> None:
        resp = await client.post(
            "/api/v1/organization/members",
            json={"email": "cook@joespizza.example", "role": "admin"},
        )
        assert resp.status_code == 422


class TestOnboarding:
    @pytest.mark.asyncio
    async def test_reports_flags_and_next_path(self, client, seeded_org) -> None:
        resp = await client.get("/api/v1/onboarding")

        assert resp.status_code == 200
        assert resp.json() == {
            "has_connected_google": False,
            "has_selected_location": True,
            "has_set_alerts": False,
            "next_path": "/onboarding/connect",
        }

    @pytest.mark.asyncio
    async def test_completed_onboarding_points_to_app(self, client, session_factory, seeded_org) -> None:
        async with session_scope(session_factory) as session:
            org = await session.get(OrganizationTable, "org-1")
            org.has_connected_google = True
            org.has_set_alerts = True

        resp = await client.get("/api/v1/onboarding")
        assert resp.json()["next_path"] == "/app"

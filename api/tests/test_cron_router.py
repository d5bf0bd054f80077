"""Integration tests for the scheduler endpoints under /cron."""

from __future__ import annotations

import pytest
from pydantic import SecretStr
from review_core.state.database import session_scope
from review_core.state.tables import AlertOutboxTable, AlertPreferenceTable, ReviewTable
from sqlalchemy import select

CRON_HEADERS = {"X-Cron-Secret": "cron-test-secret"}


class TestCronSecret:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "path",
        ["/api/v1/cron/sync-reviews", "/api/v1/cron/alerts/outbox", "/api/v1/cron/daily-digest"],
    )
    async def test_missing_secret_is_401(self, client, path) -> None:
        resp = await client.post(path)
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_secret_is_401(self, client) -> None:
        resp = await client.post("/api/v1/cron/sync-reviews", headers={"X-Cron-Secret": "guess"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_unconfigured_secret_is_503(self, client, test_settings) -> None:
        test_settings.cron_secret = SecretStr("")
        resp = await client.post("/api/v1/cron/sync-reviews", headers=CRON_HEADERS)
        assert resp.status_code == 503

    @pytest.mark.asyncio
    async def test_no_bearer_token_needed(self, client) -> None:
        resp = await client.post(
            "/api/v1/cron/daily-digest",
            headers={**CRON_HEADERS, "Authorization": ""},
        )
        assert resp.status_code == 200


class TestSyncReviews:
    @pytest.mark.asyncio
    async def test_syncs_all_organizations(self, client, connected_org, fake_google, make_review) -> None:
        fake_google.reviews["accounts/1/locations/123"] = [make_review("r1", "FIVE"), make_review("r2", "TWO")]

        resp = await client.post("/api/v1/cron/sync-reviews", headers=CRON_HEADERS)

        assert resp.status_code == 200
        assert resp.json() == {"organizations": 1, "locations": 1, "new_count": 2, "failures": 0}

    @pytest.mark.asyncio
    async def test_upstream_failure_is_counted(self, client, connected_org, fake_google) -> None:
        fake_google.reviews_status = 500

        resp = await client.post("/api/v1/cron/sync-reviews", headers=CRON_HEADERS)

        assert resp.status_code == 200
        assert resp.json()["failures"] == 1

    @pytest.mark.asyncio
    async def test_nothing_to_sync(self, client) -> None:
        resp = await client.post("/api/v1/cron/sync-reviews", headers=CRON_HEADERS)
        assert resp.json() == {"organizations": 0, "locations": 0, "new_count": 0, "failures": 0}


class TestAlertOutbox:
    @pytest.mark.asyncio
    async def test_drains_failed_entries(self, client, seeded_org, session_factory, email_sender) -> None:
        async with session_scope(session_factory) as session:
            session.add(ReviewTable(id="rev-1", location_id="loc-1", external_id="g-1", rating=1, content="Awful"))
            session.add(
                AlertPreferenceTable(
                    organization_id="org-1",
                    user_id="user-1",
                    location_id="loc-1",
                    email_enabled=True,
                    whatsapp_enabled=False,
                    frequency="instant",
                )
            )
            await session.flush()
            session.add(AlertOutboxTable(review_id="rev-1", organization_id="org-1", status="failed", attempts=1))

        resp = await client.post("/api/v1/cron/alerts/outbox", headers=CRON_HEADERS)

        assert resp.status_code == 200
        assert resp.json() == {"processed": 1, "failed": 0, "sent": 1}
        email_sender.send.assert_awaited_once()
        async with session_factory() as session:
            entry = (await session.execute(select(AlertOutboxTable))).scalar_one()
        assert entry.status == "sent"

    @pytest.mark.asyncio
    async def test_limit_is_validated(self, client) -> None:
        resp = await client.post("/api/v1/cron/alerts/outbox", params={"limit": 0}, headers=CRON_HEADERS)
        assert resp.status_code == 422


class TestDailyDigest:
    @pytest.mark.asyncio
    async def test_digest_sends_nothing(self, client, email_sender) -> None:
        resp = await client.post("/api/v1/cron/daily-digest", headers=CRON_HEADERS)

        assert resp.json() == {"sent": 0}
        email_sender.send.assert_not_awaited()

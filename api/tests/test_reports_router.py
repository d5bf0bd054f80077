"""Integration tests for the /reports endpoints."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from review_core.state.database import session_scope
from review_core.state.tables import ReviewTable


@pytest.fixture()
def add_review(session_factory):
    async def _add(review_id: str, rating: int, days_ago: int = 1, content: str = "") -> None:
        async with session_scope(session_factory) as session:
            session.add(
                ReviewTable(
                    id=review_id,
                    location_id="loc-1",
                    external_id=f"g-{review_id}",
                    rating=rating,
                    content=content,
                    published_at=datetime.now(UTC) - timedelta(days=days_ago),
                )
            )

    return _add


class TestKpis:
    @pytest.mark.asyncio
    async def test_default_window(self, client, seeded_org, add_review) -> None:
        await add_review("r-1", 5)
        await add_review("r-2", 3, days_ago=45)

        resp = await client.get("/api/v1/reports/kpis")

        assert resp.status_code == 200
        assert resp.json()["period_days"] == 30
        assert resp.json()["total_reviews"] == 1
        assert resp.json()["avg_rating"] == 5.0

    @pytest.mark.asyncio
    async def test_custom_window(self, client, seeded_org, add_review) -> None:
        await add_review("r-1", 5)
        await add_review("r-2", 3, days_ago=45)

        resp = await client.get("/api/v1/reports/kpis", params={"days": 90})
        assert resp.json()["total_reviews"] == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("days", [0, 366])
    async def test_window_bounds(self, client, seeded_org, days) -> None:
        resp = await client.get("/api/v1/reports/kpis", params={"days": days})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_viewer_can_read(self, client, seeded_org, make_auth_headers) -> None:
        resp = await client.get("/api/v1/reports/kpis", headers=make_auth_headers(role="viewer"))
        assert resp.status_code == 200


class TestExport:
    @pytest.mark.asyncio
    async def test_reviews_csv_download(self, client, seeded_org, add_review) -> None:
        await add_review("r-1", 2, content="@cmd")

        resp = await client.get("/api/v1/reports/export", params={"type": "reviews"})

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert 'filename="reviews-export-' in resp.headers["content-disposition"]
        assert "'@cmd" in resp.text

    @pytest.mark.asyncio
    async def test_defaults_to_reviews(self, client, seeded_org) -> None:
        resp = await client.get("/api/v1/reports/export")
        assert resp.text.startswith("review_id,")

    @pytest.mark.asyncio
    async def test_unknown_type_is_400(self, client, seeded_org) -> None:
        resp = await client.get("/api/v1/reports/export", params={"type": "payroll"})
        assert resp.status_code == 400

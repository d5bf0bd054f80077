"""Repository tests against an in-memory SQLite database.

Covers:
- Review dedup on (location_id, external_id)
- Posted-reply check-and-set and the one-posted-reply index
- Review list filters
- Sync lock acquisition, contention and expiry
- Credential upsert / refresh update
- Alert preference upsert and the WhatsApp-number rule
- Monotonic onboarding flags
- Outbox retry bookkeeping
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from review_core.state.repository import (
    AlertOutboxRepository,
    AlertPreferenceRepository,
    AuditRepository,
    CredentialRepository,
    LocationRepository,
    MembershipRepository,
    OrganizationRepository,
    ReplyRepository,
    ReviewRepository,
    SyncLockRepository,
    UserRepository,
)
from review_core.state.tables import ReviewReplyTable, SyncLockTable
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

_NOW = datetime.now(UTC)


async def _insert_review(session, *, external_id: str, rating: int = 5, days_ago: int = 0) -> str | None:
    return await ReviewRepository(session).insert_if_absent(
        location_id="loc-1",
        external_id=external_id,
        author="Ana",
        rating=rating,
        content="text",
        published_at=_NOW - timedelta(days=days_ago),
    )


class TestReviewDedup:
    @pytest.mark.asyncio
    async def test_second_insert_is_ignored(self, async_session, seeded_location) -> None:
        first = await _insert_review(async_session, external_id="r1")
        second = await _insert_review(async_session, external_id="r1")

        assert first is not None
        assert second is None
        assert await ReviewRepository(async_session).count_for_location("loc-1") == 1

    @pytest.mark.asyncio
    async def test_existing_review_is_not_updated(self, async_session, seeded_location) -> None:
        review_id = await _insert_review(async_session, external_id="r1", rating=5)
        await ReviewRepository(async_session).insert_if_absent(
            location_id="loc-1",
            external_id="r1",
            author="Changed",
            rating=1,
            content="edited upstream",
            published_at=_NOW,
        )
        review = await ReviewRepository(async_session).get(review_id)
        await async_session.refresh(review)
        assert review.rating == 5
        assert review.author == "Ana"


class TestReplies:
    @pytest.mark.asyncio
    async def test_mark_posted_updates_existing_row(self, async_session, seeded_location) -> None:
        review_id = await _insert_review(async_session, external_id="r1")
        repo = ReplyRepository(async_session)

        first = await repo.mark_posted(review_id, "Thanks!")
        second = await repo.mark_posted(review_id, "Thanks again!")

        assert first.id == second.id
        rows = (
            (await async_session.execute(select(ReviewReplyTable).where(ReviewReplyTable.state == "posted")))
            .scalars()
            .all()
        )
        assert len(rows) == 1
        assert rows[0].posted_text == "Thanks again!"

    @pytest.mark.asyncio
    async def test_store_rejects_second_posted_row(self, async_session, seeded_location) -> None:
        review_id = await _insert_review(async_session, external_id="r1")
        await ReplyRepository(async_session).mark_posted(review_id, "one")
        async_session.add(ReviewReplyTable(id="dup", review_id=review_id, state="posted", posted_text="two"))
        with pytest.raises(IntegrityError):
            await async_session.flush()

    @pytest.mark.asyncio
    async def test_drafts_accumulate(self, async_session, seeded_location) -> None:
        review_id = await _insert_review(async_session, external_id="r1")
        repo = ReplyRepository(async_session)
        await repo.add_draft(review_id, "draft one")
        await repo.add_draft(review_id, "draft two", ai_generated=True)

        grouped = await repo.list_for_reviews([review_id])
        assert [r.draft for r in grouped[review_id]] == ["draft one", "draft two"]
        assert grouped[review_id][1].ai_generated is True


class TestReviewListing:
    @pytest.mark.asyncio
    async def test_filters(self, async_session, seeded_location) -> None:
        fresh_good = await _insert_review(async_session, external_id="a", rating=5, days_ago=1)
        old_bad = await _insert_review(async_session, external_id="b", rating=2, days_ago=30)
        fresh_bad = await _insert_review(async_session, external_id="c", rating=3, days_ago=2)
        await ReplyRepository(async_session).mark_posted(fresh_good, "thanks")

        repo = ReviewRepository(async_session)

        async def ids(review_filter: str) -> set[str]:
            rows = await repo.list_for_organization("org-1", review_filter=review_filter)
            return {review.id for review, _ in rows}

        assert await ids("all") == {fresh_good, old_bad, fresh_bad}
        assert await ids("new") == {fresh_good, fresh_bad}
        assert await ids("unreplied") == {old_bad, fresh_bad}
        assert await ids("negative") == {old_bad, fresh_bad}

    @pytest.mark.asyncio
    async def test_deleted_locations_are_hidden(self, async_session, seeded_location) -> None:
        await _insert_review(async_session, external_id="a")
        await LocationRepository(async_session, "org-1").soft_delete("loc-1")
        rows = await ReviewRepository(async_session).list_for_organization("org-1")
        assert rows == []

    @pytest.mark.asyncio
    async def test_other_organizations_are_hidden(self, async_session, seeded_location) -> None:
        await _insert_review(async_session, external_id="a")
        rows = await ReviewRepository(async_session).list_for_organization("org-2")
        assert rows == []

    @pytest.mark.asyncio
    async def test_unknown_filter_rejected(self, async_session, seeded_location) -> None:
        with pytest.raises(ValueError, match="Unknown review filter"):
            await ReviewRepository(async_session).list_for_organization("org-1", review_filter="bogus")


class TestSyncLock:
    @pytest.mark.asyncio
    async def test_contention(self, async_session) -> None:
        repo = SyncLockRepository(async_session)
        assert await repo.acquire("org-1", "loc-1", locked_by="worker-a") is True
        assert await repo.acquire("org-1", "loc-1", locked_by="worker-b") is False
        assert await repo.acquire("org-1", "loc-2", locked_by="worker-b") is True

    @pytest.mark.asyncio
    async def test_release_allows_reacquire(self, async_session) -> None:
        repo = SyncLockRepository(async_session)
        await repo.acquire("org-1", "loc-1", locked_by="worker-a")
        await repo.release("org-1", "loc-1", locked_by="worker-a")
        assert await repo.acquire("org-1", "loc-1", locked_by="worker-b") is True

    @pytest.mark.asyncio
    async def test_expired_lock_is_reaped(self, async_session) -> None:
        repo = SyncLockRepository(async_session)
        await repo.acquire("org-1", "loc-1", locked_by="worker-a")
        await async_session.execute(update(SyncLockTable).values(expires_at=_NOW - timedelta(minutes=1)))
        assert await repo.acquire("org-1", "loc-1", locked_by="worker-b") is True


class TestCredentials:
    @pytest.mark.asyncio
    async def test_upsert_then_update(self, async_session, seeded_location) -> None:
        repo = CredentialRepository(async_session, "org-1")
        await repo.upsert(
            access_token_enc="enc-a",
            refresh_token_enc="enc-r",
            token_type="Bearer",
            scope="s",
            expires_at=_NOW,
        )
        await repo.upsert(
            access_token_enc="enc-b",
            refresh_token_enc="enc-r",
            token_type="Bearer",
            scope="s",
            expires_at=_NOW,
        )
        await repo.update_access_token(access_token_enc="enc-c", token_type="Bearer", scope="s2", expires_at=_NOW)

        cred = await repo.get()
        await async_session.refresh(cred)
        assert cred.access_token_enc == "enc-c"
        assert cred.refresh_token_enc == "enc-r"
        assert cred.scope == "s2"

        assert await repo.delete() is True
        assert await repo.get() is None


class TestAlertPreferences:
    @pytest.mark.asyncio
    async def test_whatsapp_number_dropped_when_disabled(self, async_session, seeded_location) -> None:
        await UserRepository(async_session).ensure("u1", email="owner@example.com")
        repo = AlertPreferenceRepository(async_session, "org-1")
        pref = await repo.upsert(
            user_id="u1",
            location_id="loc-1",
            email_enabled=True,
            whatsapp_enabled=False,
            whatsapp_number="+15550001",
            star_threshold=3,
            frequency="instant",
        )
        assert pref.whatsapp_number is None

        pref = await repo.upsert(
            user_id="u1",
            location_id="loc-1",
            email_enabled=False,
            whatsapp_enabled=True,
            whatsapp_number="+15550001",
            star_threshold=None,
            frequency="instant",
        )
        assert pref.whatsapp_number == "+15550001"
        assert pref.star_threshold is None
        assert len(await repo.list_for_user("u1")) == 1

    @pytest.mark.asyncio
    async def test_instant_listing_excludes_daily(self, async_session, seeded_location) -> None:
        users = UserRepository(async_session)
        await users.ensure("u1", email="a@example.com")
        await users.ensure("u2", email="b@example.com")
        repo = AlertPreferenceRepository(async_session, "org-1")
        for user_id, frequency in (("u1", "instant"), ("u2", "daily")):
            await repo.upsert(
                user_id=user_id,
                location_id="loc-1",
                email_enabled=True,
                whatsapp_enabled=False,
                whatsapp_number=None,
                star_threshold=None,
                frequency=frequency,
            )
        rows = await repo.list_instant_for_location("loc-1")
        assert [user.email for _, user in rows] == ["a@example.com"]


class TestOrganization:
    @pytest.mark.asyncio
    async def test_flags_are_monotonic(self, async_session) -> None:
        repo = OrganizationRepository(async_session, "org-9")
        org = await repo.ensure("Cafe")
        assert org.has_connected_google is False

        await repo.set_flags("has_connected_google")
        await repo.set_flags()
        org = await repo.get()
        await async_session.refresh(org)
        assert org.has_connected_google is True
        assert org.has_set_alerts is False

    @pytest.mark.asyncio
    async def test_unknown_flag_rejected(self, async_session) -> None:
        with pytest.raises(ValueError):
            await OrganizationRepository(async_session, "org-9").set_flags("is_admin")

    @pytest.mark.asyncio
    async def test_ensure_raises_when_row_cannot_be_loaded(self, async_session, monkeypatch) -> None:
        async def _no_row(*args, **kwargs):
            return None

        monkeypatch.setattr(async_session, "get", _no_row)
        with pytest.raises(RuntimeError, match="missing after upsert"):
            await OrganizationRepository(async_session, "org-9").ensure("Cafe")

    @pytest.mark.asyncio
    async def test_memberships(self, async_session) -> None:
        await OrganizationRepository(async_session, "org-9").ensure()
        await UserRepository(async_session).ensure("u1", email="a@example.com")
        repo = MembershipRepository(async_session, "org-9")
        await repo.upsert("u1", "member")
        await repo.upsert("u1", "owner")
        assert await repo.get_role("u1") == "owner"
        assert [user.id for _, user in await repo.list_members()] == ["u1"]


class TestOutbox:
    @pytest.mark.asyncio
    async def test_retry_bookkeeping(self, async_session, seeded_location) -> None:
        review_id = await _insert_review(async_session, external_id="r1")
        repo = AlertOutboxRepository(async_session)
        entry_id = await repo.enqueue(review_id, "org-1")

        await repo.mark_failed(entry_id, "smtp down")
        retryable = await repo.list_retryable(max_attempts=2)
        assert [e.id for e in retryable] == [entry_id]

        await repo.mark_failed(entry_id, "smtp down")
        assert await repo.list_retryable(max_attempts=2) == []

    @pytest.mark.asyncio
    async def test_sent_entries_are_not_retried(self, async_session, seeded_location) -> None:
        review_id = await _insert_review(async_session, external_id="r1")
        repo = AlertOutboxRepository(async_session)
        entry_id = await repo.enqueue(review_id, "org-1")
        await repo.mark_sent(entry_id, 2)
        assert await repo.list_retryable(max_attempts=5) == []


class TestAudit:
    @pytest.mark.asyncio
    async def test_log_and_query(self, async_session) -> None:
        repo = AuditRepository(async_session, tenant_id="org-1")
        await repo.log(action="location.added", user_id="u1", target_id="loc-1")
        await repo.log(action="review.replied", user_id="u1", target_id="r1", metadata={"posted": True})

        entries = await repo.query(action="review.replied")
        assert len(entries) == 1
        assert entries[0].metadata_json == {"posted": True}
        assert len(await AuditRepository(async_session, tenant_id="org-2").query()) == 0

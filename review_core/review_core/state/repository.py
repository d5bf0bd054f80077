"""Repository classes providing CRUD access to the ReviewPilot state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``session_scope`` context manager).

Tenant-scoped repositories take the organization id as ``tenant_id`` and
filter every query by it.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import delete, exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from review_core.state.tables import (
    AlertOutboxTable,
    AlertPreferenceTable,
    AuditLogTable,
    IntegrationCredentialTable,
    LocationTable,
    MembershipTable,
    OrganizationTable,
    ReviewReplyTable,
    ReviewTable,
    SubscriptionTable,
    SyncLockTable,
    UserTable,
)

logger = logging.getLogger(__name__)

# Review list filters understood by ReviewRepository.list_for_organization.
REVIEW_FILTERS: frozenset[str] = frozenset({"all", "new", "unreplied", "negative"})

_NEW_REVIEW_WINDOW = timedelta(days=7)
_NEGATIVE_RATING_MAX = 3


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
        )
    return await session.execute(stmt)


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    The returned result's ``rowcount`` is 1 when the row was inserted and 0
    when a conflicting row already existed.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# Organizations, users, memberships
# ---------------------------------------------------------------------------


_ONBOARDING_FLAGS: frozenset[str] = frozenset({"has_connected_google", "has_selected_location", "has_set_alerts"})


class OrganizationRepository:
    """Organization row for one tenant."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self) -> OrganizationTable | None:
        return await self._session.get(OrganizationTable, self._tenant_id)

    async def ensure(self, name: str | None = None) -> OrganizationTable:
        """Create the organization if it does not exist and return it."""
        values: dict[str, Any] = {"id": self._tenant_id}
        if name:
            values["name"] = name
        await _dialect_upsert_nothing(self._session, OrganizationTable, values, ["id"])
        await self._session.flush()
        org = await self._session.get(OrganizationTable, self._tenant_id, populate_existing=True)
        if org is None:
            raise RuntimeError(f"Organization '{self._tenant_id}' missing after upsert")
        return org

    async def update_settings(
        self,
        *,
        name: str,
        industry: str | None,
        timezone: str,
    ) -> OrganizationTable:
        org = await self.ensure()
        org.name = name
        org.industry = industry
        org.timezone = timezone
        await self._session.flush()
        return org

    async def set_flags(self, *flags: str) -> None:
        """Raise the named onboarding flags to ``True``.

        Flags are monotonic: this method has no way to reset one.
        """
        unknown = set(flags) - _ONBOARDING_FLAGS
        if unknown:
            raise ValueError(f"Unknown onboarding flag(s): {sorted(unknown)}")
        if not flags:
            return
        stmt = (
            update(OrganizationTable)
            .where(OrganizationTable.id == self._tenant_id)
            .values({flag: True for flag in flags})
        )
        await self._session.execute(stmt)
        await self._session.flush()


class UserRepository:
    """Users are global; organization access goes through memberships."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, user_id: str) -> UserTable | None:
        return await self._session.get(UserTable, user_id)

    async def get_by_email(self, email: str) -> UserTable | None:
        stmt = select(UserTable).where(func.lower(UserTable.email) == email.lower()).limit(1)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def ensure(
        self,
        user_id: str,
        *,
        email: str | None = None,
        display_name: str | None = None,
    ) -> UserTable:
        """Insert the user if absent; fill in a missing email on an existing row."""
        user = await self._session.get(UserTable, user_id)
        if user is None:
            user = UserTable(id=user_id, email=email, display_name=display_name)
            self._session.add(user)
        else:
            if email and not user.email:
                user.email = email
            if display_name and not user.display_name:
                user.display_name = display_name
        await self._session.flush()
        return user


class MembershipRepository:
    """Organization membership and role lookups."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def upsert(self, user_id: str, role: str) -> None:
        await _dialect_upsert(
            self._session,
            MembershipTable,
            values={
                "id": uuid.uuid4().hex,
                "organization_id": self._tenant_id,
                "user_id": user_id,
                "role": role,
            },
            index_elements=["organization_id", "user_id"],
            update_columns=["role"],
        )
        await self._session.flush()

    async def get_role(self, user_id: str) -> str | None:
        stmt = select(MembershipTable.role).where(
            MembershipTable.organization_id == self._tenant_id,
            MembershipTable.user_id == user_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_members(self) -> list[tuple[MembershipTable, UserTable]]:
        stmt = (
            select(MembershipTable, UserTable)
            .join(UserTable, UserTable.id == MembershipTable.user_id)
            .where(MembershipTable.organization_id == self._tenant_id)
            .order_by(MembershipTable.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]


# ---------------------------------------------------------------------------
# Integration credentials
# ---------------------------------------------------------------------------


class CredentialRepository:
    """Encrypted OAuth credential for a tenant.

    Values passed in must already be ciphertext; this repository never sees
    plaintext tokens.
    """

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self) -> IntegrationCredentialTable | None:
        stmt = (
            select(IntegrationCredentialTable)
            .where(IntegrationCredentialTable.organization_id == self._tenant_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(
        self,
        *,
        access_token_enc: str,
        refresh_token_enc: str | None,
        token_type: str | None,
        scope: str | None,
        expires_at: datetime | None,
    ) -> None:
        now = datetime.now(UTC)
        await _dialect_upsert(
            self._session,
            IntegrationCredentialTable,
            values={
                "id": uuid.uuid4().hex,
                "organization_id": self._tenant_id,
                "provider": "google",
                "access_token_enc": access_token_enc,
                "refresh_token_enc": refresh_token_enc,
                "token_type": token_type,
                "scope": scope,
                "expires_at": expires_at,
                "updated_at": now,
            },
            index_elements=["organization_id"],
            update_columns=[
                "access_token_enc",
                "refresh_token_enc",
                "token_type",
                "scope",
                "expires_at",
                "updated_at",
            ],
        )
        await self._session.flush()

    async def update_access_token(
        self,
        *,
        access_token_enc: str,
        token_type: str | None,
        scope: str | None,
        expires_at: datetime | None,
    ) -> None:
        stmt = (
            update(IntegrationCredentialTable)
            .where(IntegrationCredentialTable.organization_id == self._tenant_id)
            .values(
                access_token_enc=access_token_enc,
                token_type=token_type,
                scope=scope,
                expires_at=expires_at,
                updated_at=datetime.now(UTC),
            )
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def delete(self) -> bool:
        stmt = delete(IntegrationCredentialTable).where(IntegrationCredentialTable.organization_id == self._tenant_id)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# Locations
# ---------------------------------------------------------------------------


class LocationRepository:
    """Business locations belonging to a tenant."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self, location_id: str) -> LocationTable | None:
        stmt = select(LocationTable).where(
            LocationTable.id == location_id,
            LocationTable.organization_id == self._tenant_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active(self) -> list[LocationTable]:
        stmt = (
            select(LocationTable)
            .where(
                LocationTable.organization_id == self._tenant_id,
                LocationTable.deleted.is_(False),
            )
            .order_by(LocationTable.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def first_active(self) -> LocationTable | None:
        locations = await self.list_active()
        return locations[0] if locations else None

    async def attach(self, *, external_id: str, name: str, address: str | None) -> LocationTable:
        """Insert or refresh a location by external id, clearing any soft delete."""
        await _dialect_upsert(
            self._session,
            LocationTable,
            values={
                "id": uuid.uuid4().hex,
                "organization_id": self._tenant_id,
                "external_id": external_id,
                "name": name,
                "address": address,
                "deleted": False,
            },
            index_elements=["organization_id", "external_id"],
            update_columns=["name", "address", "deleted"],
        )
        await self._session.flush()
        stmt = (
            select(LocationTable)
            .where(
                LocationTable.organization_id == self._tenant_id,
                LocationTable.external_id == external_id,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def soft_delete(self, location_id: str) -> bool:
        stmt = (
            update(LocationTable)
            .where(
                LocationTable.id == location_id,
                LocationTable.organization_id == self._tenant_id,
                LocationTable.deleted.is_(False),
            )
            .values(deleted=True)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    @staticmethod
    async def list_sync_targets(session: AsyncSession) -> list[LocationTable]:
        """Return every syncable location across all organizations.

        A location is syncable when it is not deleted, carries an external
        id, and its organization has completed location selection.
        """
        stmt = (
            select(LocationTable)
            .join(OrganizationTable, OrganizationTable.id == LocationTable.organization_id)
            .where(
                OrganizationTable.has_selected_location.is_(True),
                LocationTable.deleted.is_(False),
                LocationTable.external_id != "",
            )
            .order_by(LocationTable.organization_id, LocationTable.created_at.asc())
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Reviews and replies
# ---------------------------------------------------------------------------


class ReviewRepository:
    """Review rows.  Reviews are only ever created by the sync worker."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert_if_absent(
        self,
        *,
        location_id: str,
        external_id: str,
        author: str,
        rating: int,
        content: str,
        published_at: datetime,
        platform: str = "google",
        review_url: str | None = None,
    ) -> str | None:
        """Insert a review unless ``(location_id, external_id)`` already exists.

        Returns the new review id, or ``None`` when the review was already
        known.  Existing rows are never updated.
        """
        review_id = uuid.uuid4().hex
        result = await _dialect_upsert_nothing(
            self._session,
            ReviewTable,
            values={
                "id": review_id,
                "location_id": location_id,
                "external_id": external_id,
                "platform": platform,
                "author": author,
                "rating": rating,
                "content": content,
                "review_url": review_url,
                "published_at": published_at,
                "status": "new",
                "created_at": datetime.now(UTC),
            },
            index_elements=["location_id", "external_id"],
        )
        await self._session.flush()
        if (result.rowcount or 0) > 0:  # type: ignore[attr-defined]
            return review_id
        return None

    async def get(self, review_id: str) -> ReviewTable | None:
        return await self._session.get(ReviewTable, review_id)

    async def get_with_location(
        self,
        review_id: str,
        organization_id: str | None = None,
    ) -> tuple[ReviewTable, LocationTable] | None:
        """Return the review and its location, optionally scoped to an organization."""
        stmt = (
            select(ReviewTable, LocationTable)
            .join(LocationTable, LocationTable.id == ReviewTable.location_id)
            .where(ReviewTable.id == review_id)
        )
        if organization_id is not None:
            stmt = stmt.where(LocationTable.organization_id == organization_id)
        result = await self._session.execute(stmt)
        row = result.first()
        if row is None:
            return None
        return row[0], row[1]

    async def count_for_location(self, location_id: str) -> int:
        stmt = select(func.count()).select_from(ReviewTable).where(ReviewTable.location_id == location_id)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def list_for_organization(
        self,
        organization_id: str,
        *,
        review_filter: str = "all",
        location_id: str | None = None,
        limit: int = 200,
        now: datetime | None = None,
    ) -> list[tuple[ReviewTable, LocationTable]]:
        """List reviews from non-deleted locations, newest first.

        Parameters
        ----------
        review_filter:
            ``all``, ``new`` (published in the last 7 days), ``unreplied``
            (no posted reply) or ``negative`` (rating 1-3).
        """
        if review_filter not in REVIEW_FILTERS:
            raise ValueError(f"Unknown review filter '{review_filter}'. Valid: {sorted(REVIEW_FILTERS)}")
        now = now or datetime.now(UTC)

        stmt = (
            select(ReviewTable, LocationTable)
            .join(LocationTable, LocationTable.id == ReviewTable.location_id)
            .where(
                LocationTable.organization_id == organization_id,
                LocationTable.deleted.is_(False),
            )
        )
        if location_id is not None:
            stmt = stmt.where(ReviewTable.location_id == location_id)
        if review_filter == "new":
            stmt = stmt.where(ReviewTable.published_at >= now - _NEW_REVIEW_WINDOW)
        elif review_filter == "unreplied":
            posted = exists().where(
                ReviewReplyTable.review_id == ReviewTable.id,
                ReviewReplyTable.state == "posted",
            )
            stmt = stmt.where(~posted)
        elif review_filter == "negative":
            stmt = stmt.where(ReviewTable.rating >= 1, ReviewTable.rating <= _NEGATIVE_RATING_MAX)

        stmt = stmt.order_by(ReviewTable.published_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]

    async def list_since(self, organization_id: str, since: datetime | None = None) -> list[ReviewTable]:
        """Reviews of an organization's non-deleted locations, for reporting."""
        stmt = (
            select(ReviewTable)
            .join(LocationTable, LocationTable.id == ReviewTable.location_id)
            .where(
                LocationTable.organization_id == organization_id,
                LocationTable.deleted.is_(False),
            )
            .order_by(ReviewTable.published_at.desc())
        )
        if since is not None:
            stmt = stmt.where(ReviewTable.published_at >= since)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def set_status(self, review_id: str, status: str) -> None:
        stmt = update(ReviewTable).where(ReviewTable.id == review_id).values(status=status)
        await self._session.execute(stmt)
        await self._session.flush()


class ReplyRepository:
    """Reply attempts.  At most one ``posted`` row exists per review."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add_draft(
        self,
        review_id: str,
        text: str,
        *,
        user_id: str | None = None,
        ai_generated: bool = False,
    ) -> ReviewReplyTable:
        reply = ReviewReplyTable(
            id=uuid.uuid4().hex,
            review_id=review_id,
            author_user_id=user_id,
            draft=text,
            state="draft",
            ai_generated=ai_generated,
        )
        self._session.add(reply)
        await self._session.flush()
        return reply

    async def get_posted(self, review_id: str) -> ReviewReplyTable | None:
        stmt = select(ReviewReplyTable).where(
            ReviewReplyTable.review_id == review_id,
            ReviewReplyTable.state == "posted",
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_posted(
        self,
        review_id: str,
        text: str,
        *,
        user_id: str | None = None,
        ai_generated: bool = False,
        posted_at: datetime | None = None,
    ) -> ReviewReplyTable:
        """Record the posted reply for *review_id*.

        When a posted reply already exists it is updated in place, so the
        store never holds two posted rows for the same review.
        """
        posted_at = posted_at or datetime.now(UTC)
        reply = await self.get_posted(review_id)
        if reply is None:
            reply = ReviewReplyTable(
                id=uuid.uuid4().hex,
                review_id=review_id,
                author_user_id=user_id,
                state="posted",
                ai_generated=ai_generated,
            )
            self._session.add(reply)
        reply.posted_text = text
        reply.posted_at = posted_at
        if user_id is not None:
            reply.author_user_id = user_id
        await self._session.flush()
        return reply

    async def list_for_reviews(self, review_ids: Sequence[str]) -> dict[str, list[ReviewReplyTable]]:
        if not review_ids:
            return {}
        stmt = (
            select(ReviewReplyTable)
            .where(ReviewReplyTable.review_id.in_(list(review_ids)))
            .order_by(ReviewReplyTable.created_at.asc())
        )
        result = await self._session.execute(stmt)
        grouped: dict[str, list[ReviewReplyTable]] = {rid: [] for rid in review_ids}
        for reply in result.scalars().all():
            grouped.setdefault(reply.review_id, []).append(reply)
        return grouped

    async def list_posted_for_organization(self, organization_id: str) -> list[tuple[ReviewReplyTable, ReviewTable]]:
        stmt = (
            select(ReviewReplyTable, ReviewTable)
            .join(ReviewTable, ReviewTable.id == ReviewReplyTable.review_id)
            .join(LocationTable, LocationTable.id == ReviewTable.location_id)
            .where(
                LocationTable.organization_id == organization_id,
                ReviewReplyTable.state == "posted",
            )
            .order_by(ReviewReplyTable.posted_at.desc())
        )
        result = await self._session.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class AlertPreferenceRepository:
    """Per-(user, location) notification preferences for a tenant."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def list_instant_for_location(self, location_id: str) -> list[tuple[AlertPreferenceTable, UserTable]]:
        """Instant-frequency preferences for a location, joined with their users."""
        stmt = (
            select(AlertPreferenceTable, UserTable)
            .join(UserTable, UserTable.id == AlertPreferenceTable.user_id)
            .where(
                AlertPreferenceTable.organization_id == self._tenant_id,
                AlertPreferenceTable.location_id == location_id,
                AlertPreferenceTable.frequency == "instant",
            )
            .order_by(AlertPreferenceTable.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]

    async def list_for_user(self, user_id: str) -> list[AlertPreferenceTable]:
        stmt = (
            select(AlertPreferenceTable)
            .where(
                AlertPreferenceTable.organization_id == self._tenant_id,
                AlertPreferenceTable.user_id == user_id,
            )
            .order_by(AlertPreferenceTable.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def upsert(
        self,
        *,
        user_id: str,
        location_id: str,
        email_enabled: bool,
        whatsapp_enabled: bool,
        whatsapp_number: str | None,
        star_threshold: int | None,
        frequency: str,
    ) -> AlertPreferenceTable:
        now = datetime.now(UTC)
        await _dialect_upsert(
            self._session,
            AlertPreferenceTable,
            values={
                "id": uuid.uuid4().hex,
                "organization_id": self._tenant_id,
                "user_id": user_id,
                "location_id": location_id,
                "email_enabled": email_enabled,
                "whatsapp_enabled": whatsapp_enabled,
                "whatsapp_number": whatsapp_number if whatsapp_enabled else None,
                "star_threshold": star_threshold,
                "frequency": frequency,
                "updated_at": now,
            },
            index_elements=["user_id", "location_id"],
            update_columns=[
                "email_enabled",
                "whatsapp_enabled",
                "whatsapp_number",
                "star_threshold",
                "frequency",
                "updated_at",
            ],
        )
        await self._session.flush()
        stmt = (
            select(AlertPreferenceTable)
            .where(
                AlertPreferenceTable.user_id == user_id,
                AlertPreferenceTable.location_id == location_id,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one()


class AlertOutboxRepository:
    """Queue of alert fan-outs awaiting (re)delivery."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def enqueue(self, review_id: str, organization_id: str) -> str:
        entry_id = uuid.uuid4().hex
        self._session.add(
            AlertOutboxTable(
                id=entry_id,
                review_id=review_id,
                organization_id=organization_id,
                status="pending",
                attempts=0,
            )
        )
        await self._session.flush()
        return entry_id

    async def get(self, entry_id: str) -> AlertOutboxTable | None:
        return await self._session.get(AlertOutboxTable, entry_id)

    async def list_retryable(self, *, max_attempts: int, limit: int = 100) -> list[AlertOutboxTable]:
        stmt = (
            select(AlertOutboxTable)
            .where(
                AlertOutboxTable.status.in_(("pending", "failed")),
                AlertOutboxTable.attempts < max_attempts,
            )
            .order_by(AlertOutboxTable.created_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def mark_sent(self, entry_id: str, sent_count: int) -> None:
        stmt = (
            update(AlertOutboxTable)
            .where(AlertOutboxTable.id == entry_id)
            .values(
                status="sent",
                attempts=AlertOutboxTable.attempts + 1,
                sent_count=sent_count,
                last_error=None,
                processed_at=datetime.now(UTC),
            )
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def mark_failed(self, entry_id: str, error: str) -> None:
        stmt = (
            update(AlertOutboxTable)
            .where(AlertOutboxTable.id == entry_id)
            .values(
                status="failed",
                attempts=AlertOutboxTable.attempts + 1,
                last_error=error[:2000],
                processed_at=datetime.now(UTC),
            )
        )
        await self._session.execute(stmt)
        await self._session.flush()


# ---------------------------------------------------------------------------
# Sync locks
# ---------------------------------------------------------------------------


class SyncLockRepository:
    """Advisory locks serialising review syncs per (organization, location).

    Locks are row-based with an absolute expiry.  ``acquire`` performs an
    atomic check-and-insert: expired locks are reaped first, then the insert
    either wins or hits the unique constraint and does nothing.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def acquire(
        self,
        organization_id: str,
        location_id: str,
        *,
        locked_by: str,
        ttl_seconds: int = 300,
    ) -> bool:
        """Return ``True`` if the lock was acquired."""
        now = datetime.now(UTC)

        expire_stmt = delete(SyncLockTable).where(
            SyncLockTable.organization_id == organization_id,
            SyncLockTable.location_id == location_id,
            SyncLockTable.expires_at < now,
        )
        await self._session.execute(expire_stmt)

        result = await _dialect_upsert_nothing(
            self._session,
            SyncLockTable,
            values={
                "organization_id": organization_id,
                "location_id": location_id,
                "locked_by": locked_by,
                "locked_at": now,
                "expires_at": now + timedelta(seconds=ttl_seconds),
            },
            index_elements=["organization_id", "location_id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def release(self, organization_id: str, location_id: str, *, locked_by: str) -> None:
        stmt = delete(SyncLockTable).where(
            SyncLockTable.organization_id == organization_id,
            SyncLockTable.location_id == location_id,
            SyncLockTable.locked_by == locked_by,
        )
        await self._session.execute(stmt)
        await self._session.flush()


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class AuditRepository:
    """Append-only audit log.  Entries are never updated or deleted."""

    def __init__(self, session: AsyncSession, *, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def log(
        self,
        *,
        action: str,
        user_id: str | None = None,
        target_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Write an audit entry.  Returns the entry ID."""
        entry_id = uuid.uuid4().hex
        self._session.add(
            AuditLogTable(
                id=entry_id,
                organization_id=self._tenant_id,
                user_id=user_id,
                action=action,
                target_id=target_id,
                metadata_json=metadata,
                created_at=datetime.now(UTC),
            )
        )
        await self._session.flush()

        logger.info(
            "Audit: org=%s user=%s action=%s target=%s",
            self._tenant_id,
            user_id or "-",
            action,
            target_id or "-",
        )
        return entry_id

    async def query(
        self,
        *,
        action: str | None = None,
        since: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditLogTable]:
        """Query entries, most recent first."""
        stmt = select(AuditLogTable).where(AuditLogTable.organization_id == self._tenant_id)
        if action is not None:
            stmt = stmt.where(AuditLogTable.action == action)
        if since is not None:
            stmt = stmt.where(AuditLogTable.created_at >= since)
        stmt = stmt.order_by(AuditLogTable.created_at.desc()).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """Billing subscription state for a tenant."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self) -> SubscriptionTable | None:
        stmt = (
            select(SubscriptionTable)
            .where(SubscriptionTable.organization_id == self._tenant_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(
        self,
        *,
        status: str,
        provider_subscription_id: str | None,
        provider_customer_id: str | None,
        variant_id: str | None,
        renews_at: datetime | None,
        ends_at: datetime | None,
    ) -> None:
        await _dialect_upsert(
            self._session,
            SubscriptionTable,
            values={
                "id": uuid.uuid4().hex,
                "organization_id": self._tenant_id,
                "status": status,
                "provider_subscription_id": provider_subscription_id,
                "provider_customer_id": provider_customer_id,
                "variant_id": variant_id,
                "renews_at": renews_at,
                "ends_at": ends_at,
                "updated_at": datetime.now(UTC),
            },
            index_elements=["organization_id"],
            update_columns=[
                "status",
                "provider_subscription_id",
                "provider_customer_id",
                "variant_id",
                "renews_at",
                "ends_at",
                "updated_at",
            ],
        )
        await self._session.flush()

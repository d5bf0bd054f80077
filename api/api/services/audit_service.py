"""Organization audit trail.

Replies, settings changes, integrations, membership and billing events are
all written through :class:`AuditService` so entries share one vocabulary
(:class:`AuditAction`) and one JSON shape when read back.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from review_core.state.repository import AuditRepository
from review_core.state.tables import AuditLogTable
from sqlalchemy.ext.asyncio import AsyncSession


class AuditAction(StrEnum):
    REVIEW_REPLIED = "review.replied"
    REVIEW_SYNCED = "review.synced"
    SETTINGS_UPDATED = "settings.updated"
    ALERTS_PREFERENCES_UPDATED = "alerts.preferences_updated"
    LOCATION_ADDED = "location.added"
    LOCATION_DELETED = "location.deleted"
    GOOGLE_CONNECTED = "integration.google_connected"
    GOOGLE_DISCONNECTED = "integration.google_disconnected"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    MEMBER_ADDED = "member.added"


def serialize_entry(entry: AuditLogTable) -> dict[str, Any]:
    return {
        "id": entry.id,
        "organization_id": entry.organization_id,
        "user_id": entry.user_id,
        "action": entry.action,
        "target_id": entry.target_id,
        "metadata": entry.metadata_json,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


class AuditService:
    """Audit writer and reader bound to one organization.

    Parameters
    ----------
    session:
        Session of the surrounding unit of work; entries commit with it.
    tenant_id:
        Organization the entries belong to.
    user_id:
        Acting user, or ``None`` for scheduler and webhook activity.
    """

    def __init__(self, session: AsyncSession, *, tenant_id: str, user_id: str | None = None) -> None:
        self._repo = AuditRepository(session, tenant_id=tenant_id)
        self._user_id = user_id

    async def log(self, action: AuditAction | str, target_id: str | None = None, **details: Any) -> str:
        """Append an entry; *details* become its metadata.  Returns the entry ID."""
        return await self._repo.log(
            action=str(action),
            user_id=self._user_id,
            target_id=target_id,
            metadata=details or None,
        )

    async def history(
        self,
        *,
        action: str | None = None,
        since: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        entries = await self._repo.query(action=action, since=since, limit=limit, offset=offset)
        return [serialize_entry(entry) for entry in entries]

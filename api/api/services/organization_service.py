"""Organization bootstrap, settings, members and onboarding progress."""

from __future__ import annotations

import logging
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from review_core.state.repository import (
    MembershipRepository,
    OrganizationRepository,
    UserRepository,
)
from review_core.state.tables import OrganizationTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.audit_service import AuditAction, AuditService

logger = logging.getLogger(__name__)

VALID_ROLES: frozenset[str] = frozenset({"owner", "member", "viewer"})

# Onboarding steps in order: (flag, path shown while the flag is unset).
_ONBOARDING_STEPS: tuple[tuple[str, str], ...] = (
    ("has_connected_google", "/onboarding/connect"),
    ("has_selected_location", "/onboarding/location"),
    ("has_set_alerts", "/onboarding/alerts"),
)
ONBOARDING_DONE_PATH = "/app"


def onboarding_next_path(org: OrganizationTable | None) -> str:
    """Return the first unfinished onboarding step, or ``/app``."""
    if org is None:
        return ONBOARDING_DONE_PATH
    for flag, path in _ONBOARDING_STEPS:
        if not getattr(org, flag):
            return path
    return ONBOARDING_DONE_PATH


def validate_timezone(name: str) -> str:
    """Return *name* if it is a known IANA timezone, else raise ``ValueError``."""
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone '{name}'") from exc
    return name


def serialize_organization(org: OrganizationTable) -> dict[str, Any]:
    return {
        "id": org.id,
        "name": org.name,
        "industry": org.industry,
        "timezone": org.timezone,
        "has_connected_google": org.has_connected_google,
        "has_selected_location": org.has_selected_location,
        "has_set_alerts": org.has_set_alerts,
        "created_at": org.created_at,
    }


class OrganizationService:
    """Tenant-level organization operations.

    Parameters
    ----------
    session:
        The async database session for the current request scope.
    tenant_id:
        Organization id from the caller's token.
    user_id:
        Caller's user id, used for audit entries.
    """

    def __init__(self, session: AsyncSession, tenant_id: str, *, user_id: str | None = None) -> None:
        self._session = session
        self._tenant_id = tenant_id
        self._user_id = user_id
        self._orgs = OrganizationRepository(session, tenant_id)
        self._members = MembershipRepository(session, tenant_id)
        self._audit = AuditService(session, tenant_id=tenant_id, user_id=user_id)

    async def bootstrap(self, *, user_id: str, email: str | None, name: str | None) -> dict[str, Any]:
        """Create the organization, the caller's user row and an owner membership.

        Safe to repeat: existing rows are kept and an existing role is
        not downgraded.
        """
        org = await self._orgs.ensure(name=name)
        await UserRepository(self._session).ensure(user_id, email=email)
        if await self._members.get_role(user_id) is None:
            await self._members.upsert(user_id, "owner")
            logger.info("Bootstrapped organization %s with owner %s", self._tenant_id, user_id)
        return serialize_organization(org)

    async def get(self) -> dict[str, Any] | None:
        org = await self._orgs.get()
        return serialize_organization(org) if org is not None else None

    async def update_settings(self, *, name: str, industry: str | None, timezone: str) -> dict[str, Any]:
        """Validate and store organization settings.

        Raises
        ------
        ValueError
            If the timezone is not a valid IANA name.
        """
        validate_timezone(timezone)
        org = await self._orgs.update_settings(name=name.strip(), industry=industry, timezone=timezone)
        await self._audit.log(AuditAction.SETTINGS_UPDATED, target_id=self._tenant_id, name=org.name)
        return serialize_organization(org)

    async def list_members(self) -> list[dict[str, Any]]:
        rows = await self._members.list_members()
        return [
            {
                "user_id": user.id,
                "email": user.email,
                "display_name": user.display_name,
                "role": membership.role,
                "joined_at": membership.created_at,
            }
            for membership, user in rows
        ]

    async def add_member(self, *, email: str, role: str) -> dict[str, Any]:
        """Add (or re-role) a member by email, creating the user if needed.

        Raises
        ------
        ValueError
            If *role* is not one of owner, member, viewer.
        """
        if role not in VALID_ROLES:
            raise ValueError(f"Invalid role '{role}'. Valid: {sorted(VALID_ROLES)}")
        users = UserRepository(self._session)
        user = await users.get_by_email(email)
        if user is None:
            user = await users.ensure(f"user_{email.lower()}", email=email.lower())
        await self._members.upsert(user.id, role)
        await self._audit.log(AuditAction.MEMBER_ADDED, target_id=user.id, role=role)
        return {"user_id": user.id, "email": user.email, "role": role}

    async def onboarding_status(self) -> dict[str, Any]:
        org = await self._orgs.get()
        return {
            "has_connected_google": bool(org and org.has_connected_google),
            "has_selected_location": bool(org and org.has_selected_location),
            "has_set_alerts": bool(org and org.has_set_alerts),
            "next_path": onboarding_next_path(org),
        }

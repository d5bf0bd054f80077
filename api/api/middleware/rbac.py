"""Organization roles and endpoint permission guards.

Roles are ordered ``viewer < member < owner`` and each one grants every
permission of the roles below it:

* ``viewer``: read reviews, locations, reports and settings.
* ``member``: also reply, draft, sync, attach locations and set own alerts.
* ``owner``: also change settings, billing, Google disconnect, location
  removal and membership.

Routers declare the permission they need::

    _role: Role = Depends(require_permission(Permission.WRITE))
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum, IntEnum

from fastapi import Depends, HTTPException, Request

logger = logging.getLogger(__name__)


class Role(IntEnum):
    VIEWER = 1
    MEMBER = 2
    OWNER = 3


class Permission(str, Enum):
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"
    MANAGE_MEMBERS = "manage_members"


# Permissions each role adds on top of the role below it.
_GRANTS: dict[Role, frozenset[Permission]] = {
    Role.VIEWER: frozenset({Permission.READ}),
    Role.MEMBER: frozenset({Permission.WRITE}),
    Role.OWNER: frozenset({Permission.ADMIN, Permission.MANAGE_MEMBERS}),
}


def _cumulative_permissions() -> dict[Role, frozenset[Permission]]:
    granted: frozenset[Permission] = frozenset()
    out: dict[Role, frozenset[Permission]] = {}
    for role in sorted(Role):
        granted = granted | _GRANTS[role]
        out[role] = granted
    return out


ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = _cumulative_permissions()


def parse_role(raw: str) -> Role:
    """Map a token ``role`` claim onto a :class:`Role`.

    Raises
    ------
    ValueError
        If the claim names no known role.
    """
    try:
        return Role[raw.strip().upper()]
    except KeyError:
        raise ValueError(f"Unknown role '{raw}'. Valid roles: {[r.name.lower() for r in Role]}") from None


def role_has_permission(role: Role, permission: Permission) -> bool:
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


def get_user_role(request: Request) -> Role:
    """Resolve the caller's role from ``request.state.role``.

    The authentication middleware defaults a missing claim to ``viewer``;
    an unknown claim value is rejected with 403.
    """
    raw_role: str = getattr(request.state, "role", None) or Role.VIEWER.name.lower()
    try:
        return parse_role(raw_role)
    except ValueError:
        logger.warning(
            "Rejected unknown role claim '%s' for org=%s",
            raw_role,
            getattr(request.state, "tenant_id", None),
        )
        raise HTTPException(status_code=403, detail=f"Unrecognised role '{raw_role}'")


def require_permission(permission: Permission) -> Callable[..., Role]:
    """Build a dependency that rejects callers lacking *permission* with 403."""

    def _guard(request: Request, role: Role = Depends(get_user_role)) -> Role:
        if not role_has_permission(role, permission):
            logger.info(
                "Denied %s %s: role=%s lacks %s",
                request.method,
                request.url.path,
                role.name.lower(),
                permission.value,
            )
            raise HTTPException(
                status_code=403,
                detail=f"Role '{role.name.lower()}' does not have '{permission.value}' permission",
            )
        return role

    return _guard

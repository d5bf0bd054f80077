"""Request middleware and access guards."""

from __future__ import annotations

from api.middleware.auth import AuthenticationMiddleware
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.rbac import Permission, Role, require_permission

__all__ = [
    "AuthenticationMiddleware",
    "Permission",
    "RequestLoggingMiddleware",
    "Role",
    "require_permission",
]

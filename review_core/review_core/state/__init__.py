"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from review_core.state.database import create_schema, get_engine, get_session_factory, session_scope
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
    SubscriptionRepository,
    SyncLockRepository,
    UserRepository,
)

__all__ = [
    "AlertOutboxRepository",
    "AlertPreferenceRepository",
    "AuditRepository",
    "CredentialRepository",
    "LocationRepository",
    "MembershipRepository",
    "OrganizationRepository",
    "ReplyRepository",
    "ReviewRepository",
    "SubscriptionRepository",
    "SyncLockRepository",
    "UserRepository",
    "create_schema",
    "get_engine",
    "get_session_factory",
    "session_scope",
]

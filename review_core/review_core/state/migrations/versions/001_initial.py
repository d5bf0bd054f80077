"""Initial schema for the ReviewPilot state store.

Creates organizations, users, memberships, integration credentials,
locations, reviews, review replies, alert preferences, the alert outbox,
sync locks, the audit log and subscriptions.

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps(*, updated: bool = False) -> list[sa.Column]:
    cols = [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]
    if updated:
        cols.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))
        )
    return cols


def upgrade() -> None:
    # ------------------------------------------------------------------
    # organizations / users / memberships
    # ------------------------------------------------------------------
    op.create_table(
        "organizations",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("industry", sa.String(80), nullable=True),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("has_connected_google", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("has_selected_location", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("has_set_alerts", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(updated=True),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("display_name", sa.String(256), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        "memberships",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("organization_id", sa.String(64), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.String(16), nullable=False, server_default="member"),
        *_timestamps(),
        sa.UniqueConstraint("organization_id", "user_id", name="uq_memberships_org_user"),
        sa.CheckConstraint("role IN ('owner', 'member', 'viewer')", name="ck_memberships_role"),
    )

    # ------------------------------------------------------------------
    # integration_credentials / locations
    # ------------------------------------------------------------------
    op.create_table(
        "integration_credentials",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("organization_id", sa.String(64), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider", sa.String(32), nullable=False, server_default="google"),
        sa.Column("access_token_enc", sa.Text(), nullable=False),
        sa.Column("refresh_token_enc", sa.Text(), nullable=True),
        sa.Column("token_type", sa.String(32), nullable=True),
        sa.Column("scope", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=True),
        sa.UniqueConstraint("organization_id", name="uq_integration_credentials_org"),
    )

    op.create_table(
        "locations",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("organization_id", sa.String(64), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("external_id", sa.String(512), nullable=False),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint("organization_id", "external_id", name="uq_locations_org_external"),
    )
    op.create_index("ix_locations_org", "locations", ["organization_id"])

    # ------------------------------------------------------------------
    # reviews / review_replies
    # ------------------------------------------------------------------
    op.create_table(
        "reviews",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("location_id", sa.String(32), sa.ForeignKey("locations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("external_id", sa.String(512), nullable=False),
        sa.Column("platform", sa.String(32), nullable=False, server_default="google"),
        sa.Column("author", sa.String(256), nullable=False),
        sa.Column("rating", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("review_url", sa.Text(), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="new"),
        *_timestamps(),
        sa.UniqueConstraint("location_id", "external_id", name="uq_reviews_location_external"),
        sa.CheckConstraint("rating >= 0 AND rating <= 5", name="ck_reviews_rating"),
    )
    op.create_index("ix_reviews_location_published", "reviews", ["location_id", "published_at"])

    op.create_table(
        "review_replies",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("review_id", sa.String(32), sa.ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False),
        sa.Column("author_user_id", sa.String(64), nullable=True),
        sa.Column("draft", sa.Text(), nullable=True),
        sa.Column("posted_text", sa.Text(), nullable=True),
        sa.Column("posted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("state", sa.String(16), nullable=False, server_default="draft"),
        sa.Column("ai_generated", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(updated=True),
        sa.CheckConstraint("state IN ('draft', 'posted')", name="ck_review_replies_state"),
    )
    op.create_index("ix_review_replies_review", "review_replies", ["review_id"])
    op.create_index(
        "uq_review_replies_one_posted",
        "review_replies",
        ["review_id"],
        unique=True,
        postgresql_where=sa.text("state = 'posted'"),
    )

    # ------------------------------------------------------------------
    # alert_preferences / alert_outbox
    # ------------------------------------------------------------------
    op.create_table(
        "alert_preferences",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("organization_id", sa.String(64), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("location_id", sa.String(32), sa.ForeignKey("locations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("email_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("whatsapp_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("whatsapp_number", sa.String(32), nullable=True),
        sa.Column("star_threshold", sa.Integer(), nullable=True),
        sa.Column("frequency", sa.String(16), nullable=False, server_default="instant"),
        *_timestamps(updated=True),
        sa.UniqueConstraint("user_id", "location_id", name="uq_alert_preferences_user_location"),
    )
    op.create_index("ix_alert_preferences_org_location", "alert_preferences", ["organization_id", "location_id"])

    op.create_table(
        "alert_outbox",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("review_id", sa.String(32), sa.ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False),
        sa.Column("organization_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("review_id", name="uq_alert_outbox_review"),
    )
    op.create_index("ix_alert_outbox_status", "alert_outbox", ["status"])

    # ------------------------------------------------------------------
    # sync_locks
    # ------------------------------------------------------------------
    op.create_table(
        "sync_locks",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(64), nullable=False),
        sa.Column("location_id", sa.String(32), nullable=False),
        sa.Column("locked_by", sa.String(256), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("organization_id", "location_id", name="uq_sync_locks_org_location"),
    )

    # ------------------------------------------------------------------
    # audit_log / subscriptions
    # ------------------------------------------------------------------
    op.create_table(
        "audit_log",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("organization_id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("target_id", sa.String(512), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_audit_log_org_created", "audit_log", ["organization_id", "created_at"])
    op.create_index("ix_audit_log_org_action", "audit_log", ["organization_id", "action"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("organization_id", sa.String(64), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider_subscription_id", sa.String(64), nullable=True),
        sa.Column("provider_customer_id", sa.String(64), nullable=True),
        sa.Column("variant_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="inactive"),
        sa.Column("renews_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("organization_id", name="uq_subscriptions_org"),
    )


def downgrade() -> None:
    op.drop_table("subscriptions")
    op.drop_index("ix_audit_log_org_action", table_name="audit_log")
    op.drop_index("ix_audit_log_org_created", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_table("sync_locks")
    op.drop_index("ix_alert_outbox_status", table_name="alert_outbox")
    op.drop_table("alert_outbox")
    op.drop_index("ix_alert_preferences_org_location", table_name="alert_preferences")
    op.drop_table("alert_preferences")
    op.drop_index("uq_review_replies_one_posted", table_name="review_replies")
    op.drop_index("ix_review_replies_review", table_name="review_replies")
    op.drop_table("review_replies")
    op.drop_index("ix_reviews_location_published", table_name="reviews")
    op.drop_table("reviews")
    op.drop_index("ix_locations_org", table_name="locations")
    op.drop_table("locations")
    op.drop_table("integration_credentials")
    op.drop_table("memberships")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
    op.drop_table("organizations")

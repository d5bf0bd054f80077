"""Shared Pydantic request and response models for API endpoints.

These schemas ensure that request bodies are validated and responses are
documented in the OpenAPI specification.  Routers import from here to
avoid duplication.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Review schemas
# ---------------------------------------------------------------------------


class ReplyResponse(BaseModel):
    """A draft or posted reply attached to a review."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    state: str
    draft: str | None = None
    posted_text: str | None = None
    posted_at: datetime | None = None
    ai_generated: bool = False
    author_user_id: str | None = None
    created_at: datetime | None = None


class ReviewResponse(BaseModel):
    """A review with its derived status and replies."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    location_id: str
    external_id: str
    platform: str
    author: str
    rating: int
    content: str
    review_url: str | None = None
    published_at: datetime
    status: str
    replies: list[ReplyResponse] = Field(default_factory=list)


class ReplyRequest(BaseModel):
    """Body for posting a reply to Google."""

    reply_text: str = Field(..., min_length=1, max_length=4096)
    ai_generated: bool = False


class MarkPostedRequest(BaseModel):
    """Body for recording a reply the user posted manually."""

    reply_text: str = Field(..., min_length=1, max_length=4096)


class DraftRequest(BaseModel):
    """Body for saving a manual draft."""

    draft: str = Field(..., min_length=1, max_length=4096)


class GenerateReplyRequest(BaseModel):
    """Body for requesting an AI-drafted reply."""

    tone: str = Field(default="friendly", pattern=r"^(friendly|professional|apologetic|concise)$")


class ReplyResultResponse(BaseModel):
    """Outcome of a reply post; failures carry the manual fallback."""

    posted: bool
    reply_id: str
    reply_text: str
    error: str | None = None
    code: str | None = None
    fallback_url: str | None = None


class SyncResponse(BaseModel):
    """Summary of an on-demand organization sync."""

    locations: int
    new_count: int
    total_fetched: int
    skipped: int = 0


# ---------------------------------------------------------------------------
# Location schemas
# ---------------------------------------------------------------------------


class LocationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    external_id: str
    name: str
    address: str | None = None
    created_at: datetime | None = None


class LocationAttachRequest(BaseModel):
    """Body for attaching a Google location to the organization."""

    external_id: str = Field(..., min_length=1, max_length=512)
    name: str = Field(..., min_length=1, max_length=256)
    address: str | None = Field(default=None, max_length=1024)


# ---------------------------------------------------------------------------
# Alert preference schemas
# ---------------------------------------------------------------------------


class AlertPreferenceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    location_id: str
    email_enabled: bool
    whatsapp_enabled: bool
    whatsapp_number: str | None = None
    star_threshold: int | None = None
    frequency: str


class AlertPreferenceRequest(BaseModel):
    """Body for creating or updating the caller's preference for a location."""

    location_id: str = Field(..., min_length=1, max_length=32)
    email_enabled: bool = True
    whatsapp_enabled: bool = False
    whatsapp_number: str | None = Field(default=None, max_length=32)
    star_threshold: int | None = Field(default=None, ge=1, le=5)
    frequency: str = Field(default="instant", pattern=r"^(instant|daily)$")


# ---------------------------------------------------------------------------
# Organization schemas
# ---------------------------------------------------------------------------


class OrganizationCreateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)


class OrganizationSettingsRequest(BaseModel):
    """Body for updating organization settings."""

    name: str = Field(..., min_length=1, max_length=120)
    industry: str | None = Field(default=None, max_length=80)
    timezone: str = Field(default="UTC", min_length=1, max_length=64)


class MemberAddRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    role: str = Field(default="member", pattern=r"^(owner|member|viewer)$")


class OnboardingResponse(BaseModel):
    has_connected_google: bool
    has_selected_location: bool
    has_set_alerts: bool
    next_path: str


# ---------------------------------------------------------------------------
# Billing / health schemas
# ---------------------------------------------------------------------------


class CheckoutResponse(BaseModel):
    url: str


class HealthResponse(BaseModel):
    """Liveness payload; ``db`` is ``ok`` or ``error``."""

    status: str
    version: str
    db: str
    db_latency_ms: float | None = None
    integrations: dict[str, Any] = Field(default_factory=dict)

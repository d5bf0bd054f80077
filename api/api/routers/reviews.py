"""Review endpoints: listing, on-demand sync, replies and drafts.

Reply posting always answers HTTP 200; a failed post is reported in the
body with the manual fallback link, and the submitted text is kept as a
draft.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from review_core.state.repository import OrganizationRepository, ReplyRepository, ReviewRepository
from review_core.state.tables import ReviewReplyTable, ReviewTable

from api.dependencies import (
    GBPClientDep,
    OAuthClientDep,
    ReplyDraftClientDep,
    SessionDep,
    SyncServiceDep,
    TenantDep,
    UserDep,
    VaultDep,
)
from api.errors import NotConnectedError, UpstreamAPIError
from api.middleware.rbac import Permission, Role, require_permission
from api.schemas import (
    DraftRequest,
    GenerateReplyRequest,
    MarkPostedRequest,
    ReplyRequest,
    ReplyResponse,
    ReplyResultResponse,
    ReviewResponse,
    SyncResponse,
)
from api.services.reply_poster import ReplyPoster
from api.services.token_manager import GoogleTokenManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reviews", tags=["reviews"])

_LIST_LIMIT = 200


def derive_status(replies: list[ReviewReplyTable]) -> str:
    """``replied`` if any reply is posted, ``drafted`` if any draft exists, else ``new``."""
    if any(r.state == "posted" for r in replies):
        return "replied"
    if replies:
        return "drafted"
    return "new"


def _serialize_review(review: ReviewTable, replies: list[ReviewReplyTable]) -> dict[str, Any]:
    data = ReviewResponse.model_validate(review, from_attributes=True).model_dump()
    data["replies"] = [ReplyResponse.model_validate(r).model_dump() for r in replies]
    return data


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


@router.get("", response_model=list[ReviewResponse])
async def list_reviews(
    session: SessionDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.READ)),
    review_filter: Annotated[str, Query(alias="filter", pattern=r"^(all|new|unreplied|negative)$")] = "all",
    location_id: Annotated[str | None, Query()] = None,
) -> list[dict[str, Any]]:
    """List the organization's reviews, newest first.

    The stored status is brought in line with the replies on the way out.
    """
    reviews = ReviewRepository(session)
    rows = await reviews.list_for_organization(
        tenant_id,
        review_filter=review_filter,
        location_id=location_id,
        limit=_LIST_LIMIT,
    )
    replies_by_review = await ReplyRepository(session).list_for_reviews([review.id for review, _ in rows])

    out: list[dict[str, Any]] = []
    for review, _location in rows:
        replies = replies_by_review.get(review.id, [])
        status = derive_status(replies)
        if review.status != status:
            await reviews.set_status(review.id, status)
            review.status = status
        out.append(_serialize_review(review, replies))
    return out


@router.get("/{review_id}", response_model=ReviewResponse)
async def get_review(
    review_id: str,
    session: SessionDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.READ)),
) -> dict[str, Any]:
    """Return one review with its replies."""
    found = await ReviewRepository(session).get_with_location(review_id, tenant_id)
    if found is None:
        raise HTTPException(status_code=404, detail=f"Review {review_id} not found")
    review, _location = found
    replies = (await ReplyRepository(session).list_for_reviews([review.id])).get(review.id, [])
    return _serialize_review(review, replies)


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@router.post("/sync", response_model=SyncResponse)
async def sync_reviews(
    tenant_id: TenantDep,
    sync_service: SyncServiceDep,
    _role: Role = Depends(require_permission(Permission.WRITE)),
) -> dict[str, Any]:
    """Fetch new reviews for every location of the organization now.

    Raises
    ------
    HTTPException(409)
        If the organization has no usable Google credential.
    HTTPException(502)
        If Google rejects the review listing.
    """
    try:
        return await sync_service.sync_organization(tenant_id)
    except NotConnectedError:
        raise HTTPException(status_code=409, detail="Google account is not connected")
    except UpstreamAPIError as exc:
        logger.warning("On-demand sync failed for org=%s: %s", tenant_id, exc)
        raise HTTPException(status_code=502, detail="Google Business Profile request failed")


# ---------------------------------------------------------------------------
# Replies
# ---------------------------------------------------------------------------


@router.post("/{review_id}/reply", response_model=ReplyResultResponse)
async def post_reply(
    review_id: str,
    body: ReplyRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    vault: VaultDep,
    oauth_client: OAuthClientDep,
    gbp_client: GBPClientDep,
    _role: Role = Depends(require_permission(Permission.WRITE)),
) -> dict[str, Any]:
    """Post a reply to Google, falling back to a saved draft on failure."""
    poster = ReplyPoster(
        session,
        token_manager=GoogleTokenManager(session, vault=vault, oauth_client=oauth_client),
        gbp_client=gbp_client,
    )
    try:
        result = await poster.post_reply(
            tenant_id,
            review_id,
            body.reply_text,
            user_id=user_id,
            ai_generated=body.ai_generated,
        )
    except LookupError:
        raise HTTPException(status_code=404, detail=f"Review {review_id} not found")
    if not result.posted and await ReplyRepository(session).get_posted(review_id) is None:
        await ReviewRepository(session).set_status(review_id, "drafted")
    return asdict(result)


@router.post("/{review_id}/mark-posted", response_model=ReplyResponse)
async def mark_posted(
    review_id: str,
    body: MarkPostedRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    vault: VaultDep,
    oauth_client: OAuthClientDep,
    gbp_client: GBPClientDep,
    _role: Role = Depends(require_permission(Permission.WRITE)),
) -> Any:
    """Record a reply the user pasted into Google themselves."""
    poster = ReplyPoster(
        session,
        token_manager=GoogleTokenManager(session, vault=vault, oauth_client=oauth_client),
        gbp_client=gbp_client,
    )
    try:
        return await poster.mark_posted(tenant_id, review_id, body.reply_text, user_id=user_id, source="manual")
    except LookupError:
        raise HTTPException(status_code=404, detail=f"Review {review_id} not found")


@router.post("/{review_id}/drafts", response_model=ReplyResponse, status_code=201)
async def save_draft(
    review_id: str,
    body: DraftRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    _role: Role = Depends(require_permission(Permission.WRITE)),
) -> Any:
    """Save a manual draft reply."""
    found = await ReviewRepository(session).get_with_location(review_id, tenant_id)
    if found is None:
        raise HTTPException(status_code=404, detail=f"Review {review_id} not found")
    review, _location = found
    draft = await ReplyRepository(session).add_draft(review_id, body.draft, user_id=user_id)
    if review.status != "replied":
        await ReviewRepository(session).set_status(review_id, "drafted")
    return draft


@router.post("/{review_id}/generate", response_model=ReplyResponse, status_code=201)
async def generate_draft(
    review_id: str,
    body: GenerateReplyRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    draft_client: ReplyDraftClientDep,
    _role: Role = Depends(require_permission(Permission.WRITE)),
) -> Any:
    """Draft a reply with the language model and store it as an AI draft.

    Raises
    ------
    HTTPException(503)
        If the model is not configured or the request failed.
    """
    found = await ReviewRepository(session).get_with_location(review_id, tenant_id)
    if found is None:
        raise HTTPException(status_code=404, detail=f"Review {review_id} not found")
    review, location = found

    org = await OrganizationRepository(session, tenant_id).get()
    text = await draft_client.generate_reply(
        review_text=review.content,
        rating=review.rating or None,
        business_name=location.name or (org.name if org is not None else None),
        tone=body.tone,
    )
    if text is None:
        raise HTTPException(status_code=503, detail="Reply generation is unavailable")

    draft = await ReplyRepository(session).add_draft(review_id, text, user_id=user_id, ai_generated=True)
    if review.status != "replied":
        await ReviewRepository(session).set_status(review_id, "drafted")
    return draft

"""Post owner replies to Google reviews.

A failed post never loses the user's text: the attempt is stored as a
draft reply and the result points the user at Google's own review
management UI so they can paste it manually.  Posting is not retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from review_core.ingest import build_review_name
from review_core.state.repository import ReplyRepository, ReviewRepository
from review_core.state.tables import ReviewReplyTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.errors import UpstreamAPIError
from api.services.audit_service import AuditAction, AuditService
from api.services.gbp_client import BusinessProfileClient
from api.services.token_manager import GoogleTokenManager

logger = logging.getLogger(__name__)

FALLBACK_URL = "https://business.google.com/reviews"


@dataclass(frozen=True)
class ReplyResult:
    """Outcome of a reply post.

    On failure ``code`` is the upstream HTTP status as a string,
    ``"API_FAIL"`` for transport errors, or ``"NO_TOKEN"``.
    """

    posted: bool
    reply_id: str
    reply_text: str
    error: str | None = None
    code: str | None = None
    fallback_url: str | None = None


class ReplyPoster:
    """Send a reply to Google and record the outcome.

    Parameters
    ----------
    session:
        Active database session; the caller commits.
    token_manager:
        Resolves the organization's Google access token.
    gbp_client:
        Business Profile API client.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        token_manager: GoogleTokenManager,
        gbp_client: BusinessProfileClient,
    ) -> None:
        self._session = session
        self._tokens = token_manager
        self._gbp = gbp_client

    async def post_reply(
        self,
        organization_id: str,
        review_id: str,
        reply_text: str,
        *,
        user_id: str | None = None,
        ai_generated: bool = False,
    ) -> ReplyResult:
        """Post *reply_text* as the owner reply on a review.

        Raises
        ------
        LookupError
            The review does not exist or belongs to another organization.
        """
        found = await ReviewRepository(self._session).get_with_location(review_id, organization_id)
        if found is None:
            raise LookupError(f"Review {review_id} not found")
        review, location = found
        replies = ReplyRepository(self._session)

        access_token = await self._tokens.get_valid_access_token(organization_id)
        if access_token is None:
            draft = await replies.add_draft(review_id, reply_text, user_id=user_id, ai_generated=ai_generated)
            return ReplyResult(
                posted=False,
                reply_id=draft.id,
                reply_text=reply_text,
                error="Google account is not connected",
                code="NO_TOKEN",
                fallback_url=FALLBACK_URL,
            )

        review_name = build_review_name(location.external_id, review.external_id)
        try:
            await self._gbp.post_reply(access_token, review_name, reply_text)
        except UpstreamAPIError as exc:
            logger.warning("Reply post failed for review=%s org=%s: %s", review_id, organization_id, exc)
            draft = await replies.add_draft(review_id, reply_text, user_id=user_id, ai_generated=ai_generated)
            return ReplyResult(
                posted=False,
                reply_id=draft.id,
                reply_text=reply_text,
                error=str(exc),
                code=str(exc.status_code) if exc.status_code is not None else "API_FAIL",
                fallback_url=FALLBACK_URL,
            )

        reply = await self.mark_posted(
            organization_id,
            review_id,
            reply_text,
            user_id=user_id,
            ai_generated=ai_generated,
        )
        return ReplyResult(posted=True, reply_id=reply.id, reply_text=reply_text)

    async def mark_posted(
        self,
        organization_id: str,
        review_id: str,
        reply_text: str,
        *,
        user_id: str | None = None,
        ai_generated: bool = False,
        source: str = "api",
    ) -> ReviewReplyTable:
        """Record a reply as posted without calling Google.

        Used after a successful post and when the user reports a manual
        post.  The single posted row for the review is created or updated.
        """
        if await ReviewRepository(self._session).get_with_location(review_id, organization_id) is None:
            raise LookupError(f"Review {review_id} not found")
        reply = await ReplyRepository(self._session).mark_posted(
            review_id,
            reply_text,
            user_id=user_id,
            ai_generated=ai_generated,
        )
        await ReviewRepository(self._session).set_status(review_id, "replied")
        await AuditService(self._session, tenant_id=organization_id, user_id=user_id).log(
            AuditAction.REVIEW_REPLIED,
            target_id=review_id,
            source=source,
        )
        return reply

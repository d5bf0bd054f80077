"""New-review alert fan-out.

For a newly observed review, loads the instant alert preferences of the
review's (organization, location), applies each preference's star
threshold, and sends through every enabled channel.  Channel failures are
isolated per channel per preference: they are logged and simply not
counted.

New reviews reach the dispatcher through the ``alert_outbox`` table.  The
sync worker dispatches each entry right after committing it; entries that
fail are retried by :meth:`AlertDispatcher.drain_outbox`, driven by the
scheduler.
"""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from typing import Any

from review_core.state.repository import (
    AlertOutboxRepository,
    AlertPreferenceRepository,
    ReviewRepository,
)
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import APISettings
from api.services.notifications import EmailSender, SendResult, WhatsAppSender

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlertPayload:
    """Everything needed to render and route one new-review alert."""

    organization_id: str
    location_id: str
    platform: str
    rating: int
    content: str
    author: str | None = None
    review_url: str | None = None
    location_name: str | None = None


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def render_subject(payload: AlertPayload) -> str:
    subject = f"New {payload.platform} review"
    if payload.location_name:
        subject += f" - {payload.location_name}"
    return subject


def render_email_html(payload: AlertPayload, app_url: str) -> str:
    """HTML body with rating, author, review text and a link back to the app."""
    subject = html.escape(render_subject(payload))
    author = html.escape(payload.author or "Anonymous")
    content = html.escape(payload.content)
    reviews_link = html.escape(f"{app_url.rstrip('/')}/reviews", quote=True)

    original_link = ""
    if payload.review_url:
        original_link = f'<p><a href="{html.escape(payload.review_url, quote=True)}">View original review</a></p>'

    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f'<h2 style="color: #333;">{subject}</h2>'
        '<div style="background: #f5f5f5; padding: 15px; border-radius: 5px; margin: 15px 0;">'
        f"<p><strong>Rating:</strong> {payload.rating}&#9733;</p>"
        f"<p><strong>Author:</strong> {author}</p>"
        "<p><strong>Review:</strong></p>"
        f'<p style="font-style: italic;">"{content}"</p>'
        "</div>"
        '<div style="margin: 20px 0;">'
        f'<a href="{reviews_link}" style="background: #007bff; color: white; padding: 12px 24px; '
        'text-decoration: none; border-radius: 5px; display: inline-block;">Generate Reply</a>'
        "</div>"
        f"{original_link}"
        "</div>"
    )


def render_whatsapp_text(payload: AlertPayload, app_url: str) -> str:
    summary = f"{payload.author + ' • ' if payload.author else ''}{payload.rating}★\n{payload.content}"
    if payload.review_url:
        summary += f"\n{payload.review_url}"
    return f"🔔 {render_subject(payload)}\n\n{summary}\n\nReply: {app_url.rstrip('/')}/reviews"


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class AlertDispatcher:
    """Route new-review alerts to the channels users asked for.

    Parameters
    ----------
    session:
        Active database session used for preference and review lookups.
    settings:
        Provides ``app_url`` for links and ``outbox_max_attempts``.
    email_sender, whatsapp_sender:
        Channel senders.  They report failures through :class:`SendResult`.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        settings: APISettings,
        email_sender: EmailSender,
        whatsapp_sender: WhatsAppSender,
    ) -> None:
        self._session = session
        self._settings = settings
        self._email = email_sender
        self._whatsapp = whatsapp_sender

    async def trigger_new_review_alerts(self, payload: AlertPayload) -> int:
        """Send alerts for *payload* and return the number of successful sends.

        A preference with ``star_threshold`` set is skipped when the rating
        exceeds the threshold.  One preference with both channels enabled
        can contribute two sends.
        """
        prefs = await AlertPreferenceRepository(self._session, payload.organization_id).list_instant_for_location(
            payload.location_id
        )
        if not prefs:
            return 0

        subject = render_subject(payload)
        sent = 0
        for pref, user in prefs:
            if pref.star_threshold is not None and payload.rating > pref.star_threshold:
                continue

            if pref.email_enabled and user.email:
                body = render_email_html(payload, self._settings.app_url)
                result = await self._safe_send("email", self._email.send(user.email, subject, body))
                if result.ok:
                    sent += 1

            if pref.whatsapp_enabled and pref.whatsapp_number:
                text = render_whatsapp_text(payload, self._settings.app_url)
                result = await self._safe_send("whatsapp", self._whatsapp.send(pref.whatsapp_number, text))
                if result.ok:
                    sent += 1

        logger.info(
            "Alerts for org=%s location=%s: %d preference(s), %d sent",
            payload.organization_id,
            payload.location_id,
            len(prefs),
            sent,
        )
        return sent

    async def trigger_instant_alerts_for_review(self, review_id: str) -> int:
        """Build the payload for a stored review and dispatch it.

        Returns 0 without raising when the review or its location is gone.
        """
        found = await ReviewRepository(self._session).get_with_location(review_id)
        if found is None:
            logger.error("Review %s or its location not found for alert trigger", review_id)
            return 0
        review, location = found
        payload = AlertPayload(
            organization_id=location.organization_id,
            location_id=location.id,
            location_name=location.name,
            platform=review.platform,
            rating=review.rating,
            author=review.author or None,
            content=review.content,
            review_url=review.review_url,
        )
        return await self.trigger_new_review_alerts(payload)

    async def send_daily_digests(self) -> dict[str, int]:
        """Daily digests are not implemented; the frequency is accepted and stored."""
        logger.info("Daily digest requested; digests are not implemented")
        return {"sent": 0}

    # -- Outbox ---------------------------------------------------------------

    async def dispatch_outbox_entry(self, entry_id: str) -> int | None:
        """Dispatch one outbox entry and record the outcome on it.

        The entry becomes ``sent`` when the fan-out completes, even if no
        preference qualified, and the send count is returned.  An exception
        is logged, the session is rolled back, the entry is marked ``failed``
        for retry and ``None`` is returned.  Callers must commit their own
        work before dispatching.
        """
        outbox = AlertOutboxRepository(self._session)
        entry = await outbox.get(entry_id)
        if entry is None:
            return 0
        try:
            sent = await self.trigger_instant_alerts_for_review(entry.review_id)
        except Exception as exc:
            logger.exception("Alert dispatch failed for outbox entry %s", entry_id)
            # A failed flush leaves the session unusable until rolled back.
            await self._session.rollback()
            await outbox.mark_failed(entry_id, f"{type(exc).__name__}: {exc}")
            return None
        await outbox.mark_sent(entry_id, sent)
        return sent

    async def drain_outbox(self, limit: int = 100) -> dict[str, Any]:
        """Retry pending and failed outbox entries below the attempt budget.

        Commits after every entry so partial progress survives a crash.
        """
        entries = await AlertOutboxRepository(self._session).list_retryable(
            max_attempts=self._settings.outbox_max_attempts,
            limit=limit,
        )
        entry_ids = [entry.id for entry in entries]

        processed = 0
        failed = 0
        sent = 0
        for entry_id in entry_ids:
            result = await self.dispatch_outbox_entry(entry_id)
            if result is None:
                failed += 1
            else:
                processed += 1
                sent += result
            await self._session.commit()

        if entry_ids:
            logger.info("Outbox drain: processed=%d failed=%d sent=%d", processed, failed, sent)
        return {"processed": processed, "failed": failed, "sent": sent}

    @staticmethod
    async def _safe_send(channel: str, send: Any) -> SendResult:
        try:
            return await send
        except Exception as exc:
            logger.error("Failed to send %s alert: %s", channel, exc)
            return SendResult(ok=False, error=str(exc))

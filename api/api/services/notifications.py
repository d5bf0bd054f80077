"""Outbound notification channels: email (SendGrid) and WhatsApp (Twilio).

Senders never raise.  Every call returns a :class:`SendResult`; an
unconfigured channel reports ``skipped=True`` so alerting keeps working in
environments without provider credentials.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import httpx
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

logger = logging.getLogger(__name__)

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"
_WHATSAPP_PREFIX = "whatsapp:"


@dataclass(frozen=True)
class SendResult:
    """Outcome of a single notification send."""

    ok: bool
    skipped: bool = False
    error: str | None = None


class EmailSender:
    """Send HTML email through the SendGrid v3 API.

    The SendGrid client is synchronous, so sends run in a worker thread.
    """

    def __init__(self, *, api_key: str, from_email: str) -> None:
        self._api_key = api_key
        self._from_email = from_email

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _send_sync(self, to: str, subject: str, html: str) -> int:
        message = Mail(
            from_email=self._from_email,
            to_emails=to,
            subject=subject,
            html_content=html,
        )
        response = SendGridAPIClient(self._api_key).send(message)
        return int(response.status_code)

    async def send(self, to: str, subject: str, html: str) -> SendResult:
        if not self.configured:
            logger.warning("SendGrid not configured; skipping email to %s", to)
            return SendResult(ok=False, skipped=True)
        try:
            status_code = await asyncio.to_thread(self._send_sync, to, subject, html)
        except Exception as exc:
            logger.error("Email send to %s failed: %s", to, exc)
            return SendResult(ok=False, error=str(exc))
        if status_code >= 300:
            logger.error("Email send to %s returned HTTP %d", to, status_code)
            return SendResult(ok=False, error=f"HTTP {status_code}")
        return SendResult(ok=True)


def _whatsapp_address(number: str) -> str:
    number = number.strip()
    if number.startswith(_WHATSAPP_PREFIX):
        return number
    return f"{_WHATSAPP_PREFIX}{number}"


class WhatsAppSender:
    """Send WhatsApp messages through the Twilio Messages REST API.

    Parameters
    ----------
    account_sid, auth_token:
        Twilio credentials (HTTP basic auth).
    from_number:
        Sender address, e.g. ``whatsapp:+14155238886``.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.
    """

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._owns_client = http_client is None

    @property
    def configured(self) -> bool:
        return bool(self._account_sid and self._auth_token and self._from_number)

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def send(self, to: str, body: str) -> SendResult:
        if not self.configured:
            logger.warning("Twilio WhatsApp not configured; skipping message")
            return SendResult(ok=False, skipped=True)

        url = TWILIO_MESSAGES_URL.format(sid=self._account_sid)
        form = {
            "From": _whatsapp_address(self._from_number),
            "To": _whatsapp_address(to),
            "Body": body,
        }
        try:
            response = await self._client.post(
                url,
                data=form,
                auth=(self._account_sid, self._auth_token),
            )
        except httpx.RequestError as exc:
            logger.error("WhatsApp send failed: %s", exc)
            return SendResult(ok=False, error=str(exc))

        if response.status_code >= 300:
            logger.error("WhatsApp send returned HTTP %d", response.status_code)
            return SendResult(ok=False, error=f"HTTP {response.status_code}")
        return SendResult(ok=True)

"""LemonSqueezy billing integration service.

Provides checkout creation, subscription lookups, and webhook event
processing.  Subscription state is mirrored into the ``subscriptions``
table keyed by organization.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import datetime
from typing import Any

import httpx
from review_core.state.repository import SubscriptionRepository
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import APISettings
from api.errors import UpstreamAPIError
from api.services.audit_service import AuditAction, AuditService

logger = logging.getLogger(__name__)

LEMONSQUEEZY_API_URL = "https://api.lemonsqueezy.com/v1"

ACCESS_STATUSES: frozenset[str] = frozenset({"active", "on_trial", "trialing"})

# Events whose status is implied by the event itself rather than the payload.
_FIXED_STATUS: dict[str, str] = {
    "subscription_cancelled": "cancelled",
    "subscription_resumed": "active",
    "subscription_expired": "expired",
}

_EVENT_AUDIT_ACTIONS: dict[str, str] = {
    "subscription_created": AuditAction.SUBSCRIPTION_CREATED,
    "subscription_updated": AuditAction.SUBSCRIPTION_UPDATED,
    "subscription_cancelled": AuditAction.SUBSCRIPTION_CANCELLED,
    "subscription_resumed": AuditAction.SUBSCRIPTION_RESUMED,
    "subscription_expired": AuditAction.SUBSCRIPTION_EXPIRED,
}


def verify_webhook_signature(body: bytes, signature: str, secret: str) -> bool:
    """Check the ``X-Signature`` header: hex HMAC-SHA256 of the raw body."""
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


def resolve_organization_id(event: dict[str, Any]) -> str | None:
    """Return the organization id carried in a webhook's custom data."""
    meta_custom = (event.get("meta") or {}).get("custom_data") or {}
    attributes = (event.get("data") or {}).get("attributes") or {}
    attr_custom = attributes.get("custom_data") or {}
    org_id = meta_custom.get("organization_id") or attr_custom.get("organization_id")
    return str(org_id) if org_id else None


def _parse_timestamp(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _as_str(value: Any) -> str | None:
    return str(value) if value is not None else None


class BillingService:
    """LemonSqueezy billing operations for a single organization.

    Parameters
    ----------
    session:
        Active database session.
    settings:
        API settings containing LemonSqueezy configuration.
    tenant_id:
        The organization performing billing operations.
    http_client:
        Client used for LemonSqueezy API calls.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        *,
        tenant_id: str,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._session = session
        self._settings = settings
        self._tenant_id = tenant_id
        self._http = http_client
        self._repo = SubscriptionRepository(session, tenant_id)

    async def get_subscription_info(self) -> dict[str, Any]:
        subscription = await self._repo.get()
        if subscription is None:
            return {"status": "none", "has_access": False, "renews_at": None, "ends_at": None}
        return {
            "status": subscription.status,
            "has_access": subscription.status in ACCESS_STATUSES,
            "renews_at": subscription.renews_at,
            "ends_at": subscription.ends_at,
        }

    async def create_checkout(self, *, user_id: str, email: str | None = None) -> dict[str, str]:
        """Create a hosted checkout and return ``{"url": ...}``.

        Raises
        ------
        RuntimeError
            If billing is not configured.
        ValueError
            If the organization already has an active subscription.
        UpstreamAPIError
            If LemonSqueezy rejects the request.
        """
        api_key = self._settings.lemonsqueezy_api_key.get_secret_value()
        if not (api_key and self._settings.lemonsqueezy_store_id and self._settings.lemonsqueezy_variant_id):
            raise RuntimeError("Billing is not configured")
        if self._http is None:
            raise RuntimeError("BillingService requires an HTTP client for checkout")

        existing = await self._repo.get()
        if existing is not None and existing.status == "active":
            raise ValueError("Subscription already active")

        checkout_data: dict[str, Any] = {"custom": {"organization_id": self._tenant_id, "user_id": user_id}}
        if email:
            checkout_data["email"] = email

        body = {
            "data": {
                "type": "checkouts",
                "attributes": {
                    "checkout_data": checkout_data,
                    "product_options": {
                        "redirect_url": f"{self._settings.app_url.rstrip('/')}/onboarding/success?checkout=success",
                    },
                },
                "relationships": {
                    "store": {"data": {"type": "stores", "id": self._settings.lemonsqueezy_store_id}},
                    "variant": {"data": {"type": "variants", "id": self._settings.lemonsqueezy_variant_id}},
                },
            }
        }
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/vnd.api+json",
            "Content-Type": "application/vnd.api+json",
        }
        try:
            response = await self._http.post(f"{LEMONSQUEEZY_API_URL}/checkouts", json=body, headers=headers)
        except httpx.RequestError as exc:
            raise UpstreamAPIError(f"Checkout request failed: {exc}") from exc
        if response.status_code >= 300:
            logger.warning("LemonSqueezy checkout returned %d for org=%s", response.status_code, self._tenant_id)
            raise UpstreamAPIError(
                f"Checkout returned HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text[:500],
            )

        url = ((response.json().get("data") or {}).get("attributes") or {}).get("url")
        if not url:
            raise UpstreamAPIError("Checkout response has no URL", status_code=response.status_code)
        logger.info("Created checkout for org=%s", self._tenant_id)
        return {"url": str(url)}

    async def handle_webhook_event(self, event: dict[str, Any]) -> dict[str, str]:
        """Apply a subscription webhook to this organization.

        Supported events: ``subscription_created``, ``subscription_updated``,
        ``subscription_cancelled``, ``subscription_resumed``,
        ``subscription_expired``.  Anything else is ignored.
        """
        event_name = str((event.get("meta") or {}).get("event_name", ""))
        if event_name not in _EVENT_AUDIT_ACTIONS:
            logger.debug("Unhandled LemonSqueezy event: %s", event_name)
            return {"status": "ignored"}

        data = event.get("data") or {}
        attributes = data.get("attributes") or {}
        existing = await self._repo.get()

        status = _FIXED_STATUS.get(event_name) or str(attributes.get("status") or "")
        if not status:
            status = existing.status if existing is not None else "inactive"

        await self._repo.upsert(
            status=status,
            provider_subscription_id=_as_str(data.get("id"))
            or (existing.provider_subscription_id if existing else None),
            provider_customer_id=_as_str(attributes.get("customer_id"))
            or (existing.provider_customer_id if existing else None),
            variant_id=_as_str(attributes.get("variant_id")) or (existing.variant_id if existing else None),
            renews_at=_parse_timestamp(attributes.get("renews_at")),
            ends_at=_parse_timestamp(attributes.get("ends_at")),
        )
        await AuditService(self._session, tenant_id=self._tenant_id).log(
            _EVENT_AUDIT_ACTIONS[event_name],
            target_id=_as_str(data.get("id")),
            status=status,
        )
        logger.info("Subscription %s for org=%s (status=%s)", event_name, self._tenant_id, status)
        return {"status": "processed"}

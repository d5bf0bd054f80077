"""Tests for the LemonSqueezy billing service."""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

import httpx
import pytest
from api.errors import UpstreamAPIError
from api.services.billing_service import (
    BillingService,
    resolve_organization_id,
    verify_webhook_signature,
)
from pydantic import SecretStr
from review_core.state.database import session_scope
from review_core.state.tables import AuditLogTable, SubscriptionTable
from sqlalchemy import select


def _event(name: str, status: str | None = "active", org_id: str | None = "org-1", **attributes: Any) -> dict:
    attrs: dict[str, Any] = {"customer_id": 77, "variant_id": 2, **attributes}
    if status is not None:
        attrs["status"] = status
    meta: dict[str, Any] = {"event_name": name}
    if org_id is not None:
        meta["custom_data"] = {"organization_id": org_id}
    return {"meta": meta, "data": {"id": "sub_123", "attributes": attrs}}


# ---------------------------------------------------------------------------
# Signature and payload helpers
# ---------------------------------------------------------------------------


class TestVerifyWebhookSignature:
    def test_valid_signature(self) -> None:
        body = b'{"meta": {}}'
        signature = hmac.new(b"secret", body, hashlib.sha256).hexdigest()
        assert verify_webhook_signature(body, signature, "secret") is True

    def test_signature_over_other_body(self) -> None:
        signature = hmac.new(b"secret", b"original", hashlib.sha256).hexdigest()
        assert verify_webhook_signature(b"tampered", signature, "secret") is False

    @pytest.mark.parametrize("signature,secret", [("", "secret"), ("abc", ""), ("not-hex", "secret")])
    def test_rejects_missing_or_bad_values(self, signature, secret) -> None:
        assert verify_webhook_signature(b"body", signature, secret) is False


class TestResolveOrganizationId:
    def test_from_meta_custom_data(self) -> None:
        assert resolve_organization_id(_event("subscription_created")) == "org-1"

    def test_from_attribute_custom_data(self) -> None:
        event = {"meta": {}, "data": {"attributes": {"custom_data": {"organization_id": 42}}}}
        assert resolve_organization_id(event) == "42"

    def test_missing(self) -> None:
        assert resolve_organization_id(_event("subscription_created", org_id=None)) is None


# ---------------------------------------------------------------------------
# Webhook handling
# ---------------------------------------------------------------------------


class TestHandleWebhookEvent:
    @pytest.mark.asyncio
    async def test_created_event_stores_subscription(self, session_factory, seeded_org, test_settings) -> None:
        event = _event("subscription_created", renews_at="2026-11-19T00:00:00Z")
        async with session_scope(session_factory) as session:
            result = await BillingService(session, test_settings, tenant_id="org-1").handle_webhook_event(event)

        assert result == {"status": "processed"}
        async with session_factory() as session:
            sub = (await session.execute(select(SubscriptionTable))).scalar_one()
            actions = (await session.execute(select(AuditLogTable.action))).scalars().all()
        assert sub.status == "active"
        assert sub.provider_subscription_id == "sub_123"
        assert sub.provider_customer_id == "77"
        assert sub.renews_at.year == 2026
        assert actions == ["subscription.created"]

    @pytest.mark.asyncio
    async def test_cancelled_event_overrides_payload_status(self, session_factory, seeded_org, test_settings) -> None:
        async with session_scope(session_factory) as session:
            service = BillingService(session, test_settings, tenant_id="org-1")
            await service.handle_webhook_event(_event("subscription_created"))
            await service.handle_webhook_event(_event("subscription_cancelled", status="active"))
            info = await service.get_subscription_info()

        assert info["status"] == "cancelled"
        assert info["has_access"] is False

    @pytest.mark.asyncio
    async def test_update_without_status_keeps_existing(self, session_factory, seeded_org, test_settings) -> None:
        async with session_scope(session_factory) as session:
            service = BillingService(session, test_settings, tenant_id="org-1")
            await service.handle_webhook_event(_event("subscription_created", status="on_trial"))
            await service.handle_webhook_event(_event("subscription_updated", status=None))
            info = await service.get_subscription_info()

        assert info["status"] == "on_trial"
        assert info["has_access"] is True

    @pytest.mark.asyncio
    async def test_unknown_event_is_ignored(self, session_factory, seeded_org, test_settings) -> None:
        async with session_scope(session_factory) as session:
            result = await BillingService(session, test_settings, tenant_id="org-1").handle_webhook_event(
                _event("order_created")
            )
        assert result == {"status": "ignored"}

    @pytest.mark.asyncio
    async def test_no_subscription_info(self, db_session, seeded_org, test_settings) -> None:
        info = await BillingService(db_session, test_settings, tenant_id="org-1").get_subscription_info()
        assert info == {"status": "none", "has_access": False, "renews_at": None, "ends_at": None}


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


class TestCreateCheckout:
    @pytest.mark.asyncio
    async def test_returns_hosted_url(self, db_session, seeded_org, test_settings, http_client, fake_google) -> None:
        service = BillingService(db_session, test_settings, tenant_id="org-1", http_client=http_client)

        result = await service.create_checkout(user_id="user-1", email="owner@joespizza.example")

        assert result == {"url": "https://checkout.example/abc"}
        request = fake_google.requests[-1]
        body = json.loads(request.content)
        attributes = body["data"]["attributes"]
        assert request.url.path == "/v1/checkouts"
        assert request.headers["Authorization"] == "Bearer ls-test-key"
        assert attributes["checkout_data"]["custom"] == {"organization_id": "org-1", "user_id": "user-1"}
        assert attributes["checkout_data"]["email"] == "owner@joespizza.example"
        assert body["data"]["relationships"]["variant"]["data"]["id"] == "2"

    @pytest.mark.asyncio
    async def test_unconfigured_raises_runtime_error(self, db_session, seeded_org, test_settings, http_client) -> None:
        test_settings.lemonsqueezy_api_key = SecretStr("")
        service = BillingService(db_session, test_settings, tenant_id="org-1", http_client=http_client)
        with pytest.raises(RuntimeError):
            await service.create_checkout(user_id="user-1")

    @pytest.mark.asyncio
    async def test_active_subscription_raises_value_error(
        self, db_session, seeded_org, test_settings, http_client
    ) -> None:
        db_session.add(SubscriptionTable(organization_id="org-1", status="active"))
        await db_session.flush()
        service = BillingService(db_session, test_settings, tenant_id="org-1", http_client=http_client)
        with pytest.raises(ValueError, match="already active"):
            await service.create_checkout(user_id="user-1")

    @pytest.mark.asyncio
    async def test_upstream_error(self, db_session, seeded_org, test_settings) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(422, json={"errors": []}))
        async with httpx.AsyncClient(transport=transport) as failing:
            service = BillingService(db_session, test_settings, tenant_id="org-1", http_client=failing)
            with pytest.raises(UpstreamAPIError) as exc_info:
                await service.create_checkout(user_id="user-1")
        assert exc_info.value.status_code == 422

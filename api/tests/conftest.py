"""Shared fixtures for ReviewPilot API tests.

Provides an in-memory SQLite database, a simulated Google API behind
``httpx.MockTransport``, stub notification senders, and a FastAPI client
whose requests carry a valid dev-mode bearer token.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import time
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set JWT_SECRET env var BEFORE importing application modules so the
# AuthenticationMiddleware picks up a deterministic secret in dev mode
# instead of generating a random one.
_TEST_JWT_SECRET = "test-secret-key-for-reviewpilot-tests"
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from api.config import APISettings
from api.dependencies import (
    get_db_session,
    get_email_sender,
    get_http_client,
    get_session_factory,
    get_settings,
    get_tenant_session,
    get_whatsapp_sender,
)
from api.main import create_app
from api.security import CredentialVault
from api.services.notifications import EmailSender, SendResult, WhatsAppSender
from review_core.state.database import session_scope
from review_core.state.tables import (
    Base,
    IntegrationCredentialTable,
    LocationTable,
    MembershipTable,
    OrganizationTable,
    UserTable,
)

# ---------------------------------------------------------------------------
# Dev auth token (shared across all tests)
# ---------------------------------------------------------------------------

_DEV_SECRET = _TEST_JWT_SECRET

TEST_ORG_ID = "org-1"
TEST_USER_ID = "user-1"
TEST_USER_EMAIL = "owner@joespizza.example"
TEST_CRON_SECRET = "cron-test-secret"
TEST_ENCRYPTION_KEY = "test-encryption-key"


def _make_dev_token(
    tenant_id: str = TEST_ORG_ID,
    sub: str = TEST_USER_ID,
    role: str = "owner",
    email: str | None = TEST_USER_EMAIL,
    exp_offset: float = 3600,
) -> str:
    """Generate a valid development-mode HMAC token with a role claim.

    Mirrors the signing logic in :class:`api.security.TokenManager`.
    """
    now = time.time()
    payload: dict[str, Any] = {
        "sub": sub,
        "tenant_id": tenant_id,
        "role": role,
        "email": email,
        "iss": "reviewpilot",
        "iat": now,
        "exp": now + exp_offset,
        "jti": "test-jti-conftest",
    }
    payload_json = json.dumps(payload)
    signature = hmac.new(
        _DEV_SECRET.encode("utf-8"),
        payload_json.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    token_bytes = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
    return f"rpdev.{token_bytes}.{signature}"


def auth_headers(role: str = "owner", **kwargs: Any) -> dict[str, str]:
    return {"Authorization": f"Bearer {_make_dev_token(role=role, **kwargs)}"}


_AUTH_HEADERS: dict[str, str] = auth_headers()


@pytest.fixture()
def make_auth_headers():
    """Factory for bearer headers with a chosen role, tenant or expiry."""
    return auth_headers


# ---------------------------------------------------------------------------
# Settings fixture
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        debug=True,
        database_url="sqlite+aiosqlite:///:memory:",
        platform_env="dev",
        app_url="https://app.reviewpilot.test",
        cors_origins=["http://localhost:3000"],
        credential_encryption_key=TEST_ENCRYPTION_KEY,
        google_client_id="google-client-id",
        google_client_secret="google-client-secret",
        openai_api_key="sk-test",
        cron_secret=TEST_CRON_SECRET,
        lemonsqueezy_api_key="ls-test-key",
        lemonsqueezy_store_id="1",
        lemonsqueezy_variant_id="2",
        lemonsqueezy_webhook_secret="ls-webhook-secret",
    )


@pytest.fixture()
def vault() -> CredentialVault:
    return CredentialVault(TEST_ENCRYPTION_KEY)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def engine():
    """In-memory SQLite engine with all tables created."""
    eng = create_async_engine("sqlite+aiosqlite://", echo=False, poolclass=StaticPool)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture()
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(session_factory) -> AsyncSession:
    """A session for arranging and inspecting state directly."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def seeded_org(session_factory) -> OrganizationTable:
    """Organization ``org-1`` owned by ``user-1``, with one selected location ``loc-1``."""
    async with session_scope(session_factory) as session:
        org = OrganizationTable(id=TEST_ORG_ID, name="Joe's Pizza", has_selected_location=True)
        session.add(org)
        session.add(UserTable(id=TEST_USER_ID, email=TEST_USER_EMAIL, display_name="Joe"))
        await session.flush()
        session.add(MembershipTable(organization_id=TEST_ORG_ID, user_id=TEST_USER_ID, role="owner"))
        session.add(
            LocationTable(
                id="loc-1",
                organization_id=TEST_ORG_ID,
                external_id="accounts/1/locations/123",
                name="Joe's Pizza Downtown",
            )
        )
    return org


@pytest_asyncio.fixture()
async def connected_org(session_factory, seeded_org, vault) -> OrganizationTable:
    """``seeded_org`` plus a stored Google credential valid for an hour."""
    async with session_scope(session_factory) as session:
        session.add(
            IntegrationCredentialTable(
                organization_id=TEST_ORG_ID,
                access_token_enc=vault.encrypt("access-token-1"),
                refresh_token_enc=vault.encrypt("refresh-token-1"),
                token_type="Bearer",
                scope="https://www.googleapis.com/auth/business.manage",
                expires_at=datetime.fromtimestamp(time.time() + 3600, tz=UTC),
            )
        )
    return seeded_org


# ---------------------------------------------------------------------------
# Simulated Google APIs
# ---------------------------------------------------------------------------


class FakeGoogle:
    """In-process stand-in for the Google OAuth and Business Profile APIs.

    Tests mutate the attributes to shape responses; every request is
    recorded in ``requests``.
    """

    def __init__(self) -> None:
        self.reviews: dict[str, list[dict[str, Any]]] = {}
        self.reviews_status = 200
        self.reply_status = 200
        self.token_status = 200
        # Raw body served instead of token_response when set.
        self.token_body: str | None = None
        self.token_response: dict[str, Any] = {
            "access_token": "fresh-access-token",
            "expires_in": 3599,
            "token_type": "Bearer",
            "scope": "https://www.googleapis.com/auth/business.manage",
        }
        self.accounts: list[dict[str, Any]] = [{"name": "accounts/1"}]
        self.locations: list[dict[str, Any]] = [
            {
                "name": "locations/123",
                "title": "Joe's Pizza Downtown",
                "storefrontAddress": {"addressLines": ["1 Main St", "Springfield"]},
            }
        ]
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        path = request.url.path

        if host == "oauth2.googleapis.com":
            if self.token_status >= 300:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            if self.token_body is not None:
                return httpx.Response(200, text=self.token_body, headers={"Content-Type": "text/html"})
            return httpx.Response(200, json=self.token_response)

        if host == "mybusinessaccountmanagement.googleapis.com":
            return httpx.Response(200, json={"accounts": self.accounts})

        if host == "mybusinessbusinessinformation.googleapis.com":
            return httpx.Response(200, json={"locations": self.locations})

        if host == "mybusiness.googleapis.com":
            if request.method == "PUT" and path.endswith("/reply"):
                if self.reply_status >= 300:
                    return httpx.Response(self.reply_status, json={"error": {"message": "backend error"}})
                return httpx.Response(200, json=json.loads(request.content))
            if request.method == "GET" and path.endswith("/reviews"):
                if self.reviews_status >= 300:
                    return httpx.Response(self.reviews_status, json={"error": {"message": "denied"}})
                location = path.removeprefix("/v4/").removesuffix("/reviews")
                return httpx.Response(200, json={"reviews": self.reviews.get(location, [])})

        if host == "api.openai.com":
            return httpx.Response(
                200,
                json={"choices": [{"message": {"content": "Thanks so much for the kind words!"}}]},
            )

        if host == "api.lemonsqueezy.com":
            return httpx.Response(201, json={"data": {"attributes": {"url": "https://checkout.example/abc"}}})

        return httpx.Response(404, json={"error": "unexpected request"})

    def count(self, method: str, suffix: str) -> int:
        return sum(1 for r in self.requests if r.method == method and r.url.path.endswith(suffix))


def google_review(review_id: str, rating: Any, comment: str = "", name: str = "Customer") -> dict[str, Any]:
    """Build a raw Business Profile review record."""
    return {
        "reviewId": review_id,
        "starRating": rating,
        "reviewer": {"displayName": name},
        "comment": comment,
        "createTime": "2026-10-01T12:00:00Z",
    }


@pytest.fixture()
def fake_google() -> FakeGoogle:
    return FakeGoogle()


@pytest.fixture()
def make_review():
    """Factory for raw Business Profile review records."""
    return google_review


@pytest_asyncio.fixture()
async def http_client(fake_google: FakeGoogle) -> httpx.AsyncClient:
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_google.handler)) as client:
        yield client


# ---------------------------------------------------------------------------
# Notification senders
# ---------------------------------------------------------------------------


@pytest.fixture()
def email_sender() -> AsyncMock:
    sender = AsyncMock(spec=EmailSender)
    sender.configured = True
    sender.send = AsyncMock(return_value=SendResult(ok=True))
    return sender


@pytest.fixture()
def whatsapp_sender() -> AsyncMock:
    sender = AsyncMock(spec=WhatsAppSender)
    sender.configured = True
    sender.send = AsyncMock(return_value=SendResult(ok=True))
    return sender


# ---------------------------------------------------------------------------
# FastAPI client (async httpx)
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    test_settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient,
    email_sender: AsyncMock,
    whatsapp_sender: AsyncMock,
):
    """Create a FastAPI app wired to the in-memory database and fakes.

    ASGITransport does not run the lifespan, so every global the lifespan
    would initialise is replaced through ``dependency_overrides``.
    """
    application = create_app()

    async def _override_session():
        async with session_scope(session_factory) as session:
            yield session

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_tenant_session] = _override_session
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_http_client] = lambda: http_client
    application.dependency_overrides[get_email_sender] = lambda: email_sender
    application.dependency_overrides[get_whatsapp_sender] = lambda: whatsapp_sender
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncClient:
    """Yield an async httpx client bound to the test app.

    All requests include a valid owner token for ``org-1`` so the
    AuthenticationMiddleware passes them through.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers=_AUTH_HEADERS,
    ) as ac:
        yield ac

"""FastAPI dependency injection for sessions, settings, and outbound clients."""

from __future__ import annotations

import functools
import hmac
import logging
from collections.abc import AsyncGenerator
from typing import Annotated

import httpx
from fastapi import Depends, Header, HTTPException, Request
from review_core.state.database import get_engine
from review_core.state.database import get_session_factory as build_session_factory
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import APISettings, load_api_settings
from api.security import CredentialVault
from api.services.alert_dispatcher import AlertDispatcher
from api.services.gbp_client import BusinessProfileClient
from api.services.google_oauth import GoogleOAuthClient
from api.services.notifications import EmailSender, WhatsAppSender
from api.services.reply_drafts import ReplyDraftClient
from api.services.review_sync import ReviewSyncService

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database engine / session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create the global async engine and session factory.

    Called once during application lifespan startup.
    """
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = build_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine, releasing all pooled connections."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global session factory.

    Raises
    ------
    RuntimeError
        If :func:`init_engine` has not been called.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that is not bound to an organization.

    Only for endpoints that run before a tenant is known: health probes,
    the billing webhook, the OAuth callback and the scheduler endpoints.
    The session commits on clean exit and rolls back on exception.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def get_tenant_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` for an authenticated organization request.

    Tenant scoping is applied by the repositories, which all take the
    organization id; this dependency only refuses to open a session for a
    request the authentication middleware did not populate.
    """
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")

    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_tenant_session)]

# Session WITHOUT an organization bound.  Only for the public endpoints
# listed on get_db_session.
PublicSessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Request identity
# ---------------------------------------------------------------------------


def get_tenant_id(request: Request) -> str:
    """Extract the organization id set by the authentication middleware."""
    tenant_id: str | None = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return tenant_id


def get_user_identity(request: Request) -> str:
    """Extract the authenticated user id (``sub`` claim)."""
    sub: str | None = getattr(request.state, "sub", None)
    if sub is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return sub


def get_user_email(request: Request) -> str | None:
    """Return the authenticated user's email claim, if present."""
    return getattr(request.state, "email", None)


TenantDep = Annotated[str, Depends(get_tenant_id)]
UserDep = Annotated[str, Depends(get_user_identity)]
EmailDep = Annotated[str | None, Depends(get_user_email)]

# ---------------------------------------------------------------------------
# Shared outbound HTTP client
# ---------------------------------------------------------------------------

_http_client: httpx.AsyncClient | None = None


def init_http_client(settings: APISettings) -> httpx.AsyncClient:
    """Create the process-wide :class:`httpx.AsyncClient`.

    Every upstream adapter built below borrows this client, so connection
    pools are shared and closed once at shutdown.
    """
    global _http_client  # noqa: PLW0603
    _http_client = httpx.AsyncClient(timeout=httpx.Timeout(settings.http_timeout_seconds))
    return _http_client


async def dispose_http_client() -> None:
    """Close the shared HTTP client."""
    global _http_client  # noqa: PLW0603
    if _http_client is not None:
        await _http_client.aclose()
    _http_client = None


def get_http_client() -> httpx.AsyncClient:
    """Return the shared HTTP client.

    Raises
    ------
    RuntimeError
        If :func:`init_http_client` has not been called.
    """
    if _http_client is None:
        raise RuntimeError("HTTP client has not been initialised. Ensure init_http_client() is called at startup.")
    return _http_client


HttpClientDep = Annotated[httpx.AsyncClient, Depends(get_http_client)]

# ---------------------------------------------------------------------------
# Service factories
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=4)
def _vault_for_key(key: str) -> CredentialVault:
    return CredentialVault(key)


def get_vault(settings: SettingsDep) -> CredentialVault:
    """Return the credential vault for the configured encryption key.

    Vaults are cached per key, so PBKDF2 runs once per passphrase.
    """
    return _vault_for_key(settings.credential_encryption_key.get_secret_value())


def get_oauth_client(settings: SettingsDep, http_client: HttpClientDep) -> GoogleOAuthClient:
    """Build the Google OAuth client on the shared HTTP client."""
    return GoogleOAuthClient(
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret.get_secret_value(),
        redirect_uri=settings.google_redirect_uri,
        http_client=http_client,
    )


def get_gbp_client(http_client: HttpClientDep) -> BusinessProfileClient:
    """Build the Business Profile client on the shared HTTP client."""
    return BusinessProfileClient(http_client=http_client)


def get_email_sender(settings: SettingsDep) -> EmailSender:
    """Build the SendGrid email sender."""
    return EmailSender(
        api_key=settings.sendgrid_api_key.get_secret_value(),
        from_email=settings.email_from,
    )


def get_whatsapp_sender(settings: SettingsDep, http_client: HttpClientDep) -> WhatsAppSender:
    """Build the Twilio WhatsApp sender on the shared HTTP client."""
    return WhatsAppSender(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token.get_secret_value(),
        from_number=settings.twilio_whatsapp_from,
        http_client=http_client,
    )


def get_reply_draft_client(settings: SettingsDep, http_client: HttpClientDep) -> ReplyDraftClient:
    """Build the AI reply drafting client on the shared HTTP client."""
    return ReplyDraftClient(
        api_key=settings.openai_api_key.get_secret_value(),
        model=settings.openai_model,
        base_url=settings.openai_base_url,
        http_client=http_client,
    )


VaultDep = Annotated[CredentialVault, Depends(get_vault)]
OAuthClientDep = Annotated[GoogleOAuthClient, Depends(get_oauth_client)]
GBPClientDep = Annotated[BusinessProfileClient, Depends(get_gbp_client)]
EmailSenderDep = Annotated[EmailSender, Depends(get_email_sender)]
WhatsAppSenderDep = Annotated[WhatsAppSender, Depends(get_whatsapp_sender)]
ReplyDraftClientDep = Annotated[ReplyDraftClient, Depends(get_reply_draft_client)]


def get_alert_dispatcher(
    session: SessionDep,
    settings: SettingsDep,
    email_sender: EmailSenderDep,
    whatsapp_sender: WhatsAppSenderDep,
) -> AlertDispatcher:
    """Build an alert dispatcher bound to the request session."""
    return AlertDispatcher(
        session,
        settings=settings,
        email_sender=email_sender,
        whatsapp_sender=whatsapp_sender,
    )


def get_sync_service(
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
    settings: SettingsDep,
    vault: VaultDep,
    oauth_client: OAuthClientDep,
    gbp_client: GBPClientDep,
    email_sender: EmailSenderDep,
    whatsapp_sender: WhatsAppSenderDep,
) -> ReviewSyncService:
    """Build the review sync service.

    The service opens its own sessions per phase, so it receives the
    session factory rather than the request session.
    """

    def _dispatcher_factory(session: AsyncSession) -> AlertDispatcher:
        return AlertDispatcher(
            session,
            settings=settings,
            email_sender=email_sender,
            whatsapp_sender=whatsapp_sender,
        )

    return ReviewSyncService(
        session_factory,
        settings=settings,
        vault=vault,
        oauth_client=oauth_client,
        gbp_client=gbp_client,
        dispatcher_factory=_dispatcher_factory,
    )


AlertDispatcherDep = Annotated[AlertDispatcher, Depends(get_alert_dispatcher)]
SyncServiceDep = Annotated[ReviewSyncService, Depends(get_sync_service)]

# ---------------------------------------------------------------------------
# Scheduler guard
# ---------------------------------------------------------------------------


def require_cron_secret(
    settings: SettingsDep,
    x_cron_secret: Annotated[str | None, Header()] = None,
) -> None:
    """Reject scheduler calls that do not carry the shared ``X-Cron-Secret``.

    Raises
    ------
    HTTPException(503)
        If no cron secret is configured; the endpoints are disabled.
    HTTPException(401)
        If the header is missing or does not match.
    """
    expected = settings.cron_secret.get_secret_value()
    if not expected:
        raise HTTPException(status_code=503, detail="Scheduler endpoints are not configured")
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret.encode(), expected.encode()):
        logger.warning("Rejected scheduler call with missing or invalid cron secret")
        raise HTTPException(status_code=401, detail="Invalid cron secret")

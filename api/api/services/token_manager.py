"""Google access-token lifecycle for an organization.

Loads the organization's encrypted credential, refreshes it when it is
about to expire, and persists the refreshed token encrypted at rest.
Refresh failures degrade to the stored (possibly stale) token; downstream
callers handle the resulting authorization error themselves.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from review_core.state.repository import CredentialRepository, OrganizationRepository
from sqlalchemy.ext.asyncio import AsyncSession

from api.errors import NotConnectedError, UpstreamAPIError
from api.security import CredentialVault
from api.services.google_oauth import GoogleOAuthClient

logger = logging.getLogger(__name__)

REFRESH_WINDOW = timedelta(minutes=2)


def _expires_at_from(token_response: dict[str, Any], now: datetime) -> datetime | None:
    expires_in = token_response.get("expires_in")
    try:
        seconds = int(expires_in) if expires_in is not None else None
    except (TypeError, ValueError):
        seconds = None
    return now + timedelta(seconds=seconds) if seconds is not None else None


class GoogleTokenManager:
    """Resolve a usable Google access token for an organization.

    Parameters
    ----------
    session:
        Active database session; the caller owns the transaction.
    vault:
        Encrypts and decrypts the stored tokens.
    oauth_client:
        Performs the refresh-token grant.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        vault: CredentialVault,
        oauth_client: GoogleOAuthClient,
    ) -> None:
        self._session = session
        self._vault = vault
        self._oauth = oauth_client

    async def get_valid_access_token(self, organization_id: str) -> str | None:
        """Return an access token, refreshing it if it expires within two minutes.

        Returns ``None`` when the organization has no credential or the
        stored access token cannot be decrypted.
        """
        repo = CredentialRepository(self._session, organization_id)
        credential = await repo.get()
        if credential is None:
            return None

        access_token = self._vault.decrypt(credential.access_token_enc)
        if not access_token:
            logger.warning("Stored access token for org=%s is not decryptable", organization_id)
            return None

        now = datetime.now(UTC)
        if credential.expires_at is None or credential.expires_at >= now + REFRESH_WINDOW:
            return access_token

        refresh_token = self._vault.decrypt(credential.refresh_token_enc)
        if not refresh_token:
            return access_token

        try:
            token_response = await self._oauth.refresh_access_token(refresh_token)
        except UpstreamAPIError as exc:
            logger.error("Token refresh failed for org=%s: %s", organization_id, exc)
            return access_token

        new_token = str(token_response["access_token"])
        await repo.update_access_token(
            access_token_enc=self._vault.encrypt(new_token),
            token_type=token_response.get("token_type") or credential.token_type,
            scope=token_response.get("scope") or credential.scope,
            expires_at=_expires_at_from(token_response, now),
        )
        logger.info("Refreshed Google access token for org=%s", organization_id)
        return new_token

    async def require_access_token(self, organization_id: str) -> str:
        """Like :meth:`get_valid_access_token` but raise when not connected."""
        token = await self.get_valid_access_token(organization_id)
        if token is None:
            raise NotConnectedError(organization_id)
        return token

    async def store_token_response(self, organization_id: str, token_response: dict[str, Any]) -> None:
        """Persist the result of an authorization-code exchange.

        A response without a ``refresh_token`` keeps the previously stored
        one.  Marks the organization as connected.
        """
        repo = CredentialRepository(self._session, organization_id)
        existing = await repo.get()

        refresh_token = token_response.get("refresh_token")
        if refresh_token:
            refresh_token_enc: str | None = self._vault.encrypt(str(refresh_token))
        else:
            refresh_token_enc = existing.refresh_token_enc if existing is not None else None

        await OrganizationRepository(self._session, organization_id).ensure()
        await repo.upsert(
            access_token_enc=self._vault.encrypt(str(token_response["access_token"])),
            refresh_token_enc=refresh_token_enc,
            token_type=token_response.get("token_type"),
            scope=token_response.get("scope"),
            expires_at=_expires_at_from(token_response, datetime.now(UTC)),
        )
        await OrganizationRepository(self._session, organization_id).set_flags("has_connected_google")

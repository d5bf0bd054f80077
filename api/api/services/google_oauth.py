"""Google OAuth 2.0 client for the Business Profile integration.

Builds the consent URL and performs the authorization-code and
refresh-token grants against Google's token endpoint.  Both grants are
form-encoded POSTs.
"""

from __future__ import annotations

import logging
import urllib.parse
from typing import Any

import httpx

from api.errors import UpstreamAPIError

logger = logging.getLogger(__name__)

AUTHORIZATION_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"

SCOPES: tuple[str, ...] = (
    "openid",
    "email",
    "profile",
    "https://www.googleapis.com/auth/business.manage",
)


class GoogleOAuthClient:
    """Thin async wrapper around Google's OAuth endpoints.

    Parameters
    ----------
    client_id, client_secret:
        OAuth client credentials.
    redirect_uri:
        Callback URL registered for the client.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.  A default client is
        created if not provided.
    timeout:
        Per-request timeout in seconds for the default client.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._owns_client = http_client is None

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    @property
    def configured(self) -> bool:
        return bool(self._client_id and self._client_secret)

    def build_authorization_url(self, state: str) -> str:
        """Return the consent-screen URL requesting offline access."""
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{AUTHORIZATION_URL}?{urllib.parse.urlencode(params)}"

    async def exchange_code(self, code: str) -> dict[str, Any]:
        """Exchange an authorization code for tokens.

        Returns the token response (``access_token``, ``refresh_token`` when
        granted, ``expires_in``, ``token_type``, ``scope``).
        """
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "redirect_uri": self._redirect_uri,
            }
        )

    async def refresh_access_token(self, refresh_token: str) -> dict[str, Any]:
        """Obtain a new access token using a refresh token."""
        return await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
            }
        )

    async def _token_request(self, form: dict[str, str]) -> dict[str, Any]:
        grant = form["grant_type"]
        try:
            response = await self._client.post(
                TOKEN_URL,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.RequestError as exc:
            logger.warning("Google token request failed (grant=%s): %s", grant, exc)
            raise UpstreamAPIError(f"Token request failed: {exc}") from exc

        if response.status_code >= 300:
            logger.warning("Google token endpoint returned %d (grant=%s)", response.status_code, grant)
            raise UpstreamAPIError(
                f"Token endpoint returned HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text[:500],
            )

        try:
            payload = response.json()
        except ValueError as exc:
            logger.warning("Google token endpoint returned a non-JSON body (grant=%s)", grant)
            raise UpstreamAPIError(
                "Token response is not JSON", status_code=response.status_code, body=response.text[:500]
            ) from exc
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise UpstreamAPIError("Token response has no access_token", status_code=response.status_code)
        return payload

"""HTTP client for the Google Business Profile APIs.

Covers the four calls the product needs: listing reviews of a location,
putting a reply on a review, and listing accounts and their locations for
the location picker.  Every call takes the caller's bearer access token.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from api.errors import UpstreamAPIError

logger = logging.getLogger(__name__)

REVIEWS_BASE_URL = "https://mybusiness.googleapis.com/v4"
ACCOUNTS_URL = "https://mybusinessaccountmanagement.googleapis.com/v1/accounts"
LOCATIONS_BASE_URL = "https://mybusinessbusinessinformation.googleapis.com/v1"

_ERROR_BODY_LIMIT = 500


def _strip_version_prefix(resource_name: str) -> str:
    name = resource_name.lstrip("/")
    return name[3:] if name.startswith("v4/") else name


class BusinessProfileClient:
    """Async wrapper around the Business Profile REST endpoints.

    Non-success responses raise :class:`UpstreamAPIError` carrying the HTTP
    status; transport failures raise it with ``status_code=None``.

    Parameters
    ----------
    http_client:
        Optional ``httpx.AsyncClient`` for testing.  A default client is
        created if not provided.
    timeout:
        Per-request timeout in seconds for the default client.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ) -> None:
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._owns_client = http_client is None

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    # -- Reviews -------------------------------------------------------------

    async def list_reviews(self, access_token: str, location_external_id: str) -> list[dict[str, Any]]:
        """Return the raw ``reviews`` array for a location (possibly empty)."""
        url = f"{REVIEWS_BASE_URL}/{_strip_version_prefix(location_external_id)}/reviews"
        payload = await self._request("GET", url, access_token)
        reviews = payload.get("reviews") if isinstance(payload, dict) else None
        return reviews if isinstance(reviews, list) else []

    async def post_reply(self, access_token: str, review_name: str, comment: str) -> dict[str, Any]:
        """Create or replace the owner reply on a review."""
        url = f"{REVIEWS_BASE_URL}/{_strip_version_prefix(review_name)}/reply"
        payload = await self._request("PUT", url, access_token, json={"comment": comment})
        return payload if isinstance(payload, dict) else {}

    # -- Accounts and locations ----------------------------------------------

    async def list_accounts(self, access_token: str) -> list[dict[str, Any]]:
        payload = await self._request("GET", ACCOUNTS_URL, access_token)
        accounts = payload.get("accounts") if isinstance(payload, dict) else None
        return accounts if isinstance(accounts, list) else []

    async def list_locations(self, access_token: str, account_name: str) -> list[dict[str, Any]]:
        """Return ``{"id", "display_name", "address"}`` dicts for an account's locations."""
        url = f"{LOCATIONS_BASE_URL}/{account_name.strip('/')}/locations"
        payload = await self._request(
            "GET",
            url,
            access_token,
            params={"readMask": "name,title,storefrontAddress", "pageSize": "100"},
        )
        raw_locations = payload.get("locations") if isinstance(payload, dict) else None
        if not isinstance(raw_locations, list):
            return []

        locations: list[dict[str, Any]] = []
        for loc in raw_locations:
            if not isinstance(loc, dict) or not loc.get("name"):
                continue
            address_lines = (loc.get("storefrontAddress") or {}).get("addressLines") or []
            locations.append(
                {
                    "id": loc["name"],
                    "display_name": loc.get("title") or loc.get("locationName") or "Unnamed location",
                    "address": ", ".join(str(line) for line in address_lines) or None,
                }
            )
        return locations

    # -- Transport -----------------------------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        access_token: str,
        **kwargs: Any,
    ) -> Any:
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("Business Profile timeout: %s %s", method, url)
            raise UpstreamAPIError(f"Timeout calling {url}") from exc
        except httpx.RequestError as exc:
            logger.warning("Business Profile transport error: %s %s: %s", method, url, exc)
            raise UpstreamAPIError(f"Request to {url} failed: {exc}") from exc

        if response.status_code >= 300:
            logger.warning(
                "Business Profile call failed: %s %s status=%d",
                method,
                url,
                response.status_code,
            )
            raise UpstreamAPIError(
                f"{method} {url} returned HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text[:_ERROR_BODY_LIMIT],
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

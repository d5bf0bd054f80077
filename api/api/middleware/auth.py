"""Bearer-token authentication for the ReviewPilot API.

Public routes skip the bearer check but carry their own proof: cron
routes the ``X-Cron-Secret`` header, the billing webhook its HMAC
signature, and the OAuth callback its signed ``state``.
"""

from __future__ import annotations

import logging
import os
import secrets
from typing import Any

from pydantic import SecretStr
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from api.security import TokenConfig, TokenManager

logger = logging.getLogger(__name__)

_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/api/v1/billing/webhooks",
        "/api/v1/google/oauth/callback",
        "/openapi.json",
        "/favicon.ico",
    }
)
_PUBLIC_PREFIXES: tuple[str, ...] = ("/docs", "/redoc", "/api/v1/cron/")


def _build_token_config() -> TokenConfig:
    """Read ``JWT_SECRET`` and ``TOKEN_TTL_SECONDS`` from the environment.

    Outside ``dev`` a missing secret is fatal; in ``dev`` a random
    per-process secret is generated.
    """
    platform_env = os.environ.get("API_PLATFORM_ENV", "dev").lower()
    jwt_secret_value = os.environ.get("JWT_SECRET", "")
    if not jwt_secret_value:
        if platform_env == "dev":
            jwt_secret_value = f"dev-{secrets.token_hex(32)}"
            logger.warning(
                "JWT_SECRET not set; generated random per-process dev secret. "
                "Tokens will not survive process restarts."
            )
        else:
            raise RuntimeError(
                f"JWT_SECRET environment variable must be set when API_PLATFORM_ENV={platform_env}. "
                "Refusing to start with an insecure default secret."
            )
    token_ttl = int(os.environ.get("TOKEN_TTL_SECONDS", "3600"))
    return TokenConfig(jwt_secret=SecretStr(jwt_secret_value), token_ttl_seconds=token_ttl)


_token_manager: TokenManager | None = None


def get_token_manager() -> TokenManager:
    """Return the process-wide :class:`TokenManager`, building it on first use."""
    global _token_manager  # noqa: PLW0603
    if _token_manager is None:
        _token_manager = TokenManager(_build_token_config())
    return _token_manager


def _is_public_path(path: str) -> bool:
    return path in _PUBLIC_PATHS or path.startswith(_PUBLIC_PREFIXES)


def _reject(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Require a valid bearer session token on every non-public route.

    Sets ``request.state.tenant_id`` (organization), ``sub`` (user),
    ``email`` and ``role``.  Expired tokens get 403 so clients can tell
    "log in again" apart from 401 "not a token we issued".
    """

    def __init__(self, app: Any) -> None:
        super().__init__(app)
        self._token_manager = get_token_manager()

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method == "OPTIONS" or _is_public_path(request.url.path):
            return await call_next(request)

        scheme, _, token = (request.headers.get("authorization") or "").partition(" ")
        if not scheme:
            return _reject(401, "Missing Authorization header")
        if scheme.lower() != "bearer" or not token.strip():
            return _reject(401, "Authorization header must use Bearer scheme")

        try:
            claims = self._token_manager.validate_token(token.strip())
        except PermissionError as exc:
            if "expired" in str(exc).lower():
                return _reject(403, "Token has expired")
            return _reject(401, f"Invalid token: {exc}")

        request.state.tenant_id = claims.tenant_id
        request.state.sub = claims.sub
        request.state.email = claims.email
        request.state.role = claims.role or "viewer"
        return await call_next(request)

"""Encryption at rest and bearer-token handling.

:class:`CredentialVault` encrypts OAuth tokens before they reach the
database.  :class:`TokenManager` issues and validates the HMAC-signed session
tokens presented in ``Authorization: Bearer`` headers.

Session token format::

    rpdev.<base64url(JSON claims)>.<hex HMAC-SHA256 of the JSON>
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
import uuid
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel, Field, SecretStr, ValidationError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Credential vault
# ---------------------------------------------------------------------------

_KDF_SALT = b"reviewpilot.credential-vault.v1"
_KDF_ITERATIONS = 390_000


def _derive_fernet_key(secret: str) -> bytes:
    """Return a Fernet key for *secret*.

    A secret that already is a urlsafe-base64 encoded 32-byte key is used
    as-is; anything else is stretched with PBKDF2-HMAC-SHA256.
    """
    raw = secret.encode("utf-8")
    try:
        if len(base64.urlsafe_b64decode(raw)) == 32:
            return raw
    except (binascii.Error, ValueError):
        pass
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_KDF_SALT,
        iterations=_KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(raw))


class CredentialVault:
    """Symmetric encryption for secrets stored in the database.

    Parameters
    ----------
    secret:
        Fernet key or passphrase.  Must be non-empty.
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("CredentialVault requires a non-empty encryption key")
        self._fernet = Fernet(_derive_fernet_key(secret))

    def encrypt(self, plaintext: str) -> str:
        """Encrypt *plaintext* and return the ciphertext as text."""
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str | None) -> str | None:
        """Decrypt *ciphertext*, returning ``None`` if it cannot be decrypted.

        Missing, tampered, foreign-key or non-ciphertext input all yield
        ``None``; callers treat that as "no credential".
        """
        if not ciphertext:
            return None
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except (InvalidToken, ValueError, UnicodeError):
            logger.warning("Credential decryption failed; treating value as absent")
            return None


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------

TOKEN_PREFIX = "rpdev"


class TokenConfig(BaseModel):
    """Signing configuration for session tokens."""

    jwt_secret: SecretStr
    token_ttl_seconds: int = 3600
    issuer: str = "reviewpilot"


class TokenClaims(BaseModel):
    """Validated claims carried by a session token.

    ``tenant_id`` is the organization id and ``sub`` the user id.
    """

    sub: str
    tenant_id: str
    role: str = "viewer"
    email: str | None = None
    iss: str = "reviewpilot"
    iat: float = Field(default_factory=time.time)
    exp: float | None = None
    jti: str = Field(default_factory=lambda: uuid.uuid4().hex)


class TokenManager:
    """Issue and validate HMAC-signed session tokens."""

    def __init__(self, config: TokenConfig) -> None:
        self._config = config
        self._secret = config.jwt_secret.get_secret_value().encode("utf-8")

    def _sign(self, payload_json: str) -> str:
        return hmac.new(self._secret, payload_json.encode("utf-8"), hashlib.sha256).hexdigest()

    def generate_token(
        self,
        sub: str,
        tenant_id: str,
        *,
        role: str = "viewer",
        email: str | None = None,
        ttl_seconds: int | None = None,
    ) -> str:
        now = time.time()
        claims = TokenClaims(
            sub=sub,
            tenant_id=tenant_id,
            role=role,
            email=email,
            iss=self._config.issuer,
            iat=now,
            exp=now + (ttl_seconds or self._config.token_ttl_seconds),
        )
        payload_json = json.dumps(claims.model_dump())
        encoded = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
        return f"{TOKEN_PREFIX}.{encoded}.{self._sign(payload_json)}"

    def validate_token(self, token: str) -> TokenClaims:
        """Return the claims of a valid token.

        Raises
        ------
        PermissionError
            If the token is malformed, badly signed, or expired.  Expired
            tokens carry ``"expired"`` in the message.
        """
        parts = token.split(".")
        if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
            raise PermissionError("Malformed token")
        _, encoded, signature = parts
        try:
            payload_json = base64.urlsafe_b64decode(encoded.encode("ascii")).decode("utf-8")
        except (binascii.Error, ValueError, UnicodeError) as exc:
            raise PermissionError("Malformed token payload") from exc

        if not hmac.compare_digest(self._sign(payload_json), signature):
            raise PermissionError("Invalid token signature")

        try:
            data: dict[str, Any] = json.loads(payload_json)
            claims = TokenClaims.model_validate(data)
        except (ValueError, ValidationError) as exc:
            raise PermissionError("Invalid token claims") from exc

        if claims.exp is not None and claims.exp < time.time():
            raise PermissionError("Token has expired")
        return claims

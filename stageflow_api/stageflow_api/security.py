"""Caller token validation and at-rest encryption of webhook secrets.

Bearer tokens are issued by the identity service, not by this process.
The wire format is::

    sf1.<base64url(claims_json)>.<hex hmac_sha256(secret, base64url(claims_json))>

Only validation lives here.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass

from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel, Field, SecretStr
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "sf1"

# Allowed clock drift between the issuer and this process.
_CLOCK_SKEW_SECONDS = 30


class TokenClaims(BaseModel):
    """Validated claim set carried by a caller bearer token."""

    sub: str = Field(..., min_length=1)
    tenant_id: str = Field(..., min_length=1)
    role: str | None = None
    identity_kind: str = "user"
    iat: float
    exp: float


@dataclass(frozen=True)
class CallerIdentity:
    """Authenticated internal caller, derived from validated token claims.

    ``tenant_id`` is the caller's organization id; every webhook lookup is
    scoped to it.
    """

    sub: str
    tenant_id: str
    role: str


class TokenManager:
    """Validate HMAC-signed caller tokens.

    Parameters
    ----------
    secret:
        Shared verification key.
    """

    def __init__(self, secret: SecretStr) -> None:
        raw = secret.get_secret_value()
        if not raw:
            raise ValueError("Token verification secret must not be empty")
        self._key = raw.encode("utf-8")

    def _signature(self, payload_segment: str) -> str:
        return hmac.new(self._key, payload_segment.encode("ascii"), hashlib.sha256).hexdigest()

    def validate_token(self, token: str, *, now: float | None = None) -> TokenClaims:
        """Return the claims of *token*.

        Raises
        ------
        PermissionError
            With a message containing ``"expired"`` when the token is past
            its ``exp``; with another message for any malformed or forged
            token.
        """
        parts = token.split(".")
        if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
            raise PermissionError("Malformed token")

        _, payload_segment, signature = parts
        try:
            expected = self._signature(payload_segment)
        except UnicodeEncodeError:
            raise PermissionError("Malformed token")
        # Bytes comparison: headers arrive latin-1 decoded and may hold non-ASCII text.
        if not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8", "surrogateescape")):
            raise PermissionError("Signature mismatch")

        try:
            padded = payload_segment + "=" * (-len(payload_segment) % 4)
            raw_claims = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
            claims = TokenClaims.model_validate(raw_claims)
        except (binascii.Error, ValueError, PydanticValidationError) as exc:
            logger.debug("Rejected token with undecodable claims: %s", exc)
            raise PermissionError("Malformed claims")

        current = time.time() if now is None else now
        if claims.exp < current:
            raise PermissionError("Token has expired")
        if claims.iat > current + _CLOCK_SKEW_SECONDS:
            raise PermissionError("Token issued in the future")
        return claims


class CredentialVault:
    """Fernet encryption for secrets stored in the database.

    The Fernet key is derived from *key_material* with SHA-256 so that any
    configured string can be used as the vault key.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("Vault key material must not be empty")
        digest = hashlib.sha256(key_material.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt *ciphertext*.

        Raises
        ------
        ValueError
            If the ciphertext was produced under a different key or has
            been tampered with.
        """
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            raise ValueError("Unable to decrypt stored secret") from exc

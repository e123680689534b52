"""HMAC-signed operator bearer tokens.

Token format: ``bmdev.<base64url payload>.<hex signature>``, where the
signature is HMAC-SHA256 over the base64 payload segment.  The payload is a
JSON object with ``sub``, ``business_id``, ``role``, ``iat`` and ``exp``.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time

from pydantic import BaseModel, Field, SecretStr, ValidationError

TOKEN_PREFIX = "bmdev"


class TokenClaims(BaseModel):
    """Validated claims of an operator token."""

    sub: str
    business_id: str
    role: str = "viewer"
    iat: int = Field(default_factory=lambda: int(time.time()))
    exp: int


class TokenManager:
    """Issue and validate operator tokens.

    Parameters
    ----------
    secret:
        HMAC signing secret.
    ttl_seconds:
        Lifetime of issued tokens.
    """

    def __init__(self, secret: SecretStr, *, ttl_seconds: int = 3600) -> None:
        if not secret.get_secret_value():
            raise ValueError("Token secret must not be empty")
        self._secret = secret
        self._ttl = ttl_seconds

    def _sign(self, segment: str) -> str:
        return hmac.new(
            self._secret.get_secret_value().encode("utf-8"),
            segment.encode("ascii"),
            hashlib.sha256,
        ).hexdigest()

    def generate_token(
        self, sub: str, business_id: str, *, role: str = "viewer", ttl_seconds: int | None = None
    ) -> str:
        now = int(time.time())
        claims = TokenClaims(sub=sub, business_id=business_id, role=role, iat=now, exp=now + (ttl_seconds or self._ttl))
        segment = base64.urlsafe_b64encode(claims.model_dump_json().encode("utf-8")).decode("ascii").rstrip("=")
        return f"{TOKEN_PREFIX}.{segment}.{self._sign(segment)}"

    def validate_token(self, token: str) -> TokenClaims:
        """Return the claims of *token*.

        Raises
        ------
        PermissionError
            If the token is malformed, its signature does not match, or it
            has expired.
        """
        parts = token.split(".")
        if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
            raise PermissionError("Malformed token")
        _, segment, signature = parts
        if not hmac.compare_digest(self._sign(segment), signature):
            raise PermissionError("Signature mismatch")

        padded = segment + "=" * (-len(segment) % 4)
        try:
            raw = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
            claims = TokenClaims.model_validate(raw)
        except (ValueError, ValidationError) as exc:
            raise PermissionError("Malformed token payload") from exc

        if claims.exp <= int(time.time()):
            raise PermissionError("Token has expired")
        return claims

"""Access-token signing and payment-webhook signature verification.

Access tokens are ``idt.<base64url(payload_json)>.<hex hmac-sha256>``.  The
payload carries ``sub`` (account id), ``iat``, ``exp`` and ``jti``.  Tokens are
opaque to clients and are only ever validated by :class:`TokenManager`.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from typing import Any

_TOKEN_PREFIX = "idt"
_SIGNATURE_SCHEME = "sha256="


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    iat: float
    exp: float
    jti: str


class TokenManager:
    """Issues and validates HMAC-signed access tokens.

    Parameters
    ----------
    secret:
        Signing secret.
    ttl_seconds:
        Lifetime of issued tokens.
    """

    def __init__(self, secret: str, ttl_seconds: int = 3600) -> None:
        if not secret:
            raise ValueError("Token secret must not be empty")
        self._secret = secret.encode("utf-8")
        self._ttl = ttl_seconds

    def _sign(self, payload_json: str) -> str:
        return hmac.new(self._secret, payload_json.encode("utf-8"), hashlib.sha256).hexdigest()

    def issue(self, account_id: str, *, now: float | None = None) -> str:
        """Return a signed token for *account_id*."""
        issued = time.time() if now is None else now
        payload: dict[str, Any] = {
            "sub": account_id,
            "iat": issued,
            "exp": issued + self._ttl,
            "jti": secrets.token_hex(8),
        }
        payload_json = json.dumps(payload)
        encoded = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
        return f"{_TOKEN_PREFIX}.{encoded}.{self._sign(payload_json)}"

    def validate(self, token: str, *, now: float | None = None) -> TokenClaims:
        """Return the claims of a valid token.

        Raises
        ------
        PermissionError
            If the token is malformed, its signature does not match, or it
            has expired.
        """
        parts = token.split(".")
        if len(parts) != 3 or parts[0] != _TOKEN_PREFIX:
            raise PermissionError("Malformed token")
        try:
            payload_json = base64.urlsafe_b64decode(parts[1].encode("ascii")).decode("utf-8")
            payload = json.loads(payload_json)
        except (binascii.Error, UnicodeError, ValueError) as exc:
            raise PermissionError("Malformed token") from exc

        if not hmac.compare_digest(self._sign(payload_json), parts[2]):
            raise PermissionError("Invalid token signature")

        current = time.time() if now is None else now
        try:
            claims = TokenClaims(
                sub=str(payload["sub"]),
                iat=float(payload["iat"]),
                exp=float(payload["exp"]),
                jti=str(payload["jti"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise PermissionError("Malformed token") from exc
        if claims.exp <= current:
            raise PermissionError("Token has expired")
        return claims


def sign_webhook_body(body: bytes, secret: str) -> str:
    """Return the ``sha256=<hex>`` signature header value for *body*."""
    return _SIGNATURE_SCHEME + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, signature_header: str | None, secret: str) -> bool:
    """Compute HMAC-SHA256 over the raw body and compare in constant time.

    Parameters
    ----------
    body:
        Raw request body bytes.
    signature_header:
        The full ``X-Webhook-Signature`` value (``sha256=<hex>``).
    secret:
        Shared webhook secret.
    """
    if not signature_header or not signature_header.startswith(_SIGNATURE_SCHEME):
        return False
    return hmac.compare_digest(sign_webhook_body(body, secret), signature_header)

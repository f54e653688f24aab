"""Session tokens issued by the sign-in front end.

A token is ``<payload>.<signature>`` where *payload* is the URL-safe
base64 encoding of ``{"email": ..., "exp": ...}`` and *signature* is the
hex HMAC-SHA256 of the encoded payload under the shared session secret.
Sign-in itself (magic link, OAuth) happens in the front end; this module
only issues tokens for tests and tooling and verifies them on requests.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from collections.abc import Callable
from dataclasses import dataclass

from gate_core.identity import normalize_identity

DEFAULT_TOKEN_TTL_SECONDS = 30 * 24 * 3600


class InvalidSessionToken(PermissionError):
    """The token is malformed or its signature does not verify."""


class ExpiredSessionToken(PermissionError):
    """The token verified but its ``exp`` is in the past."""


@dataclass(frozen=True)
class SessionClaims:
    """Verified token contents."""

    email: str
    expires_at: float


class SessionTokenVerifier:
    """Issue and verify HMAC-SHA256 session tokens.

    Parameters
    ----------
    secret:
        Shared signing key.  Must be non-empty.
    clock:
        Returns the current Unix time in seconds.
    """

    def __init__(self, secret: str, *, clock: Callable[[], float] = time.time) -> None:
        if not secret:
            raise ValueError("Session secret must not be empty")
        self._key = secret.encode("utf-8")
        self._clock = clock

    def _sign(self, encoded_payload: str) -> str:
        return hmac.new(self._key, encoded_payload.encode("ascii"), hashlib.sha256).hexdigest()

    def issue(self, email: str, ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS) -> str:
        """Return a signed token for *email* valid for *ttl_seconds*."""
        payload = json.dumps({"email": email, "exp": self._clock() + ttl_seconds}, separators=(",", ":"))
        encoded = base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")
        return f"{encoded}.{self._sign(encoded)}"

    def verify(self, token: str) -> SessionClaims:
        """Return the claims carried by *token*.

        Raises
        ------
        InvalidSessionToken
            If the token is malformed, forged, or carries no usable email.
        ExpiredSessionToken
            If the token is authentic but expired.
        """
        encoded, sep, signature = token.partition(".")
        if not sep or not encoded or not signature:
            raise InvalidSessionToken("Malformed session token")
        if not hmac.compare_digest(self._sign(encoded), signature):
            raise InvalidSessionToken("Bad token signature")

        try:
            claims = json.loads(base64.urlsafe_b64decode(encoded.encode("ascii")))
        except (binascii.Error, UnicodeError, ValueError) as exc:
            raise InvalidSessionToken("Undecodable token payload") from exc
        if not isinstance(claims, dict):
            raise InvalidSessionToken("Token payload must be an object")

        expires_at = claims.get("exp")
        if isinstance(expires_at, bool) or not isinstance(expires_at, int | float):
            raise InvalidSessionToken("Token has no expiry")
        raw_email = claims.get("email")
        try:
            email = normalize_identity(raw_email if isinstance(raw_email, str) else None)
        except ValueError as exc:
            raise InvalidSessionToken(str(exc)) from exc
        if email is None:
            raise InvalidSessionToken("Token has no email")

        if expires_at <= self._clock():
            raise ExpiredSessionToken("Session token has expired")
        return SessionClaims(email=email, expires_at=float(expires_at))

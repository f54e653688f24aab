"""Visitor identity keys."""

from __future__ import annotations

# RFC 5321 caps a forward path at 320 octets.
MAX_IDENTITY_LENGTH = 320


def normalize_identity(raw: str | None) -> str | None:
    """Return the canonical identity key for *raw*, or ``None`` if anonymous.

    Identities are e-mail addresses compared case-insensitively, so the key
    is the stripped, lower-cased address.  Blank input means the visitor is
    anonymous.

    Raises
    ------
    ValueError
        If the normalised key exceeds :data:`MAX_IDENTITY_LENGTH`.
    """
    if raw is None:
        return None
    key = raw.strip().lower()
    if not key:
        return None
    if len(key) > MAX_IDENTITY_LENGTH:
        raise ValueError(f"Identity exceeds {MAX_IDENTITY_LENGTH} characters")
    return key

"""Refresh token generation and at-rest hashing.

Refresh tokens are opaque random strings. Only their SHA-256 digest is ever
stored; the digest doubles as the lookup key, which is why it is unsalted.
"""

from __future__ import annotations

import hashlib
import secrets

DEFAULT_TOKEN_BYTES = 64
TOKEN_HASH_LENGTH = 64


def generate_refresh_token(nbytes: int = DEFAULT_TOKEN_BYTES) -> str:
    """Return a URL-safe random token carrying ``nbytes`` of entropy."""
    return secrets.token_urlsafe(nbytes)


def hash_token(token: str) -> str:
    """Hex SHA-256 digest of a plaintext token."""
    if not isinstance(token, str) or not token:
        raise ValueError("token must be a non-empty string")
    return hashlib.sha256(token.encode("utf-8")).hexdigest()

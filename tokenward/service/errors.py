from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - invalid_refresh_token (401)
    - token_reuse_detected (401)
    - not_found (404)
    - validation_error (400)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidRefreshToken(AuthenticationError):
    """Refresh token is unknown, expired or idle; the client must log in again."""
    error_code = "invalid_refresh_token"


class TokenReuseDetected(AuthenticationError):
    """A revoked refresh token was presented again.

    By the time this is raised every session of the owner has been revoked.
    ``user_id`` is kept for server-side handling and is never rendered into
    the response.
    """
    error_code = "token_reuse_detected"

    def __init__(self, message: str, *, user_id: Optional[str] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.user_id = user_id


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidRefreshToken",
    "TokenReuseDetected",
    "NotFoundError",
]

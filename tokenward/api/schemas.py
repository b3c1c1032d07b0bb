from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Longest refresh token accepted on the wire; generated tokens are far shorter
MAX_REFRESH_TOKEN_LENGTH = 2048

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_refresh_token",
    "token_reuse_detected",
    "forbidden",
    "not_found",
    "validation_error",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format shared by every response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"


def _strip_token(value: str) -> str:
    # Pasted tokens sometimes carry whitespace or zero-width characters
    cleaned = "".join(c for c in value if c not in _ZERO_WIDTH)
    cleaned = unicodedata.normalize("NFKC", cleaned).strip()
    if not cleaned:
        raise ValueError("refresh_token must not be empty")
    return cleaned


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=MAX_REFRESH_TOKEN_LENGTH)

    @field_validator("refresh_token")
    @classmethod
    def _clean_token(cls, value: str) -> str:
        return _strip_token(value)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., max_length=MAX_REFRESH_TOKEN_LENGTH)

    @field_validator("refresh_token")
    @classmethod
    def _clean_token(cls, value: str) -> str:
        return _strip_token(value)


class RefreshResponse(BaseModel):
    user_id: str
    session_id: str
    refresh_token: str
    refresh_token_expires_at: datetime
    token_type: str = "refresh"


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class LogoutAllResponse(BaseModel):
    sessions_closed: int


class SessionRevokeResponse(BaseModel):
    id: str
    revoked: bool = True

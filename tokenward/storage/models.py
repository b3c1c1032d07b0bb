from __future__ import annotations

import os
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    """Timezone-aware UTC now; the default clock for the whole package."""
    return datetime.now(timezone.utc)


def new_record_id() -> str:
    """Return a UUIDv7 string so ids sort in creation order."""
    unix_ms = time.time_ns() // 1_000_000
    rand = int.from_bytes(os.urandom(10), "big")
    value = (unix_ms & ((1 << 48) - 1)) << 80
    value |= 0x7 << 76
    value |= ((rand >> 62) & 0xFFF) << 64
    value |= 0b10 << 62
    value |= rand & ((1 << 62) - 1)
    return str(uuid.UUID(int=value))


class RevokedReason(str, Enum):
    """Closed set of reasons recorded when a refresh token is revoked."""

    LOGOUT = "logout"
    LOGOUT_ALL = "logout_all"
    PASSWORD_CHANGE = "password_change"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    EXPIRED = "expired"
    IDLE_TIMEOUT = "idle_timeout"
    ROTATED = "rotated"


@dataclass
class SessionSummary:
    """What a user may see about one of their sessions."""

    id: str
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass
class RefreshTokenRecord:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    last_used_at: datetime
    created_at: datetime
    updated_at: datetime
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[RevokedReason] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    deleted_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        now: datetime,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> "RefreshTokenRecord":
        return cls(
            id=new_record_id(),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=expires_at,
            last_used_at=now,
            created_at=now,
            updated_at=now,
            user_agent=user_agent,
            ip_address=ip_address,
        )

    @property
    def is_live(self) -> bool:
        """Not revoked and not soft-deleted; expiry is checked separately."""
        return not self.is_revoked and self.deleted_at is None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def to_summary(self) -> SessionSummary:
        return SessionSummary(
            id=self.id,
            created_at=self.created_at,
            last_used_at=self.last_used_at,
            expires_at=self.expires_at,
            user_agent=self.user_agent,
            ip_address=self.ip_address,
        )


@dataclass
class IssuedToken:
    """A freshly minted refresh token; ``token`` is the only plaintext copy."""

    token: str = field(repr=False)
    expires_at: datetime
    session_id: str
    user_id: str

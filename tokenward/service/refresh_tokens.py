from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol

from tokenward.config import Settings
from tokenward.logging import get_logger
from tokenward.service.errors import (
    InvalidRefreshToken,
    TokenReuseDetected,
    ValidationError,
)
from tokenward.service.tokens import generate_refresh_token
from tokenward.storage.models import (
    IssuedToken,
    RefreshTokenRecord,
    RevokedReason,
    SessionSummary,
    utcnow,
)

logger = get_logger(__name__)

# Reasons a caller may pass when closing every session of a user
BULK_REVOKE_REASONS = frozenset(
    {
        RevokedReason.LOGOUT_ALL,
        RevokedReason.PASSWORD_CHANGE,
        RevokedReason.SUSPICIOUS_ACTIVITY,
    }
)


class RefreshTokenStore(Protocol):
    def create_refresh_token(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        *,
        now: datetime,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> RefreshTokenRecord: ...

    def find_refresh_token(
        self, token: str, *, include_deleted: bool = False
    ) -> Optional[RefreshTokenRecord]: ...

    def revoke_refresh_token(
        self, token: str, reason: RevokedReason, *, now: datetime
    ) -> bool: ...

    def rotate_refresh_token(
        self,
        token: str,
        new_token: str,
        expires_at: datetime,
        *,
        now: datetime,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> Optional[RefreshTokenRecord]: ...

    def revoke_user_refresh_tokens(
        self, user_id: str, reason: RevokedReason, *, now: datetime
    ) -> int: ...

    def touch_refresh_token(self, token: str, *, now: datetime) -> bool: ...

    def list_active_refresh_tokens(
        self, user_id: str, *, now: datetime
    ) -> List[SessionSummary]: ...

    def revoke_refresh_token_by_id(
        self, session_id: str, user_id: str, reason: RevokedReason, *, now: datetime
    ) -> bool: ...

    def purge_stale_refresh_tokens(
        self,
        *,
        now: datetime,
        idle_window: timedelta,
        revoked_retention: timedelta,
    ) -> int: ...


class RefreshTokenService:
    """Refresh token issuance, one-time rotation and theft detection.

    Token states: active -> rotated | revoked -> purged. A token is good for
    exactly one rotation. Presenting a token that is already dead is treated
    as theft and revokes every session of its owner, since there is no way to
    tell which of the user's tokens leaked.

    The service holds no state between calls; races between concurrent
    rotations are settled by the store's conditional revoke.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: RefreshTokenStore = store
        self.settings = settings
        self._clock = clock or utcnow
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    @property
    def ttl(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_ttl_days)

    @property
    def idle_window(self) -> timedelta:
        return timedelta(days=self.settings.refresh_idle_days)

    @property
    def revoked_retention(self) -> timedelta:
        return timedelta(days=self.settings.revoked_retention_days)

    def _is_idle(self, record: RefreshTokenRecord, now: datetime) -> bool:
        return now - record.last_used_at > self.idle_window

    async def issue(
        self,
        user_id: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> IssuedToken:
        """Mint and persist a new refresh token for ``user_id``."""
        if not user_id:
            raise ValidationError("user_id is required")
        now = self._now()
        token = generate_refresh_token(self.settings.refresh_token_bytes)
        record = self.store.create_refresh_token(
            user_id,
            token,
            now + self.ttl,
            now=now,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        self.logger.info(
            "refresh_token_issued",
            user_id=user_id,
            token_id=record.id,
            expires_at=record.expires_at.isoformat(),
        )
        return IssuedToken(
            token=token,
            expires_at=record.expires_at,
            session_id=record.id,
            user_id=user_id,
        )

    async def rotate(
        self,
        token: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> IssuedToken:
        """Exchange a live refresh token for a new one.

        Raises:
            InvalidRefreshToken: unknown, expired or idle token.
            TokenReuseDetected: the token was already rotated or revoked; all
                of the owner's sessions are revoked before this is raised.
        """
        if not token:
            raise InvalidRefreshToken("invalid refresh token")
        record = self.store.find_refresh_token(token, include_deleted=True)
        if record is None:
            raise InvalidRefreshToken("invalid refresh token")
        if not record.is_live:
            await self._handle_reuse(record)

        now = self._now()
        self._reject_if_stale(token, record, now)

        new_token = generate_refresh_token(self.settings.refresh_token_bytes)
        replacement = self.store.rotate_refresh_token(
            token,
            new_token,
            now + self.ttl,
            now=now,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        if replacement is None:
            # Lost the race: another request rotated or revoked it first
            await self._handle_reuse(record)

        self.logger.info(
            "refresh_token_rotated",
            user_id=record.user_id,
            token_id=record.id,
            replacement_id=replacement.id,
            expires_at=replacement.expires_at.isoformat(),
        )
        return IssuedToken(
            token=new_token,
            expires_at=replacement.expires_at,
            session_id=replacement.id,
            user_id=replacement.user_id,
        )

    async def validate(self, token: str) -> RefreshTokenRecord:
        """Check a refresh token without rotating it and mark it as used."""
        record = self.store.find_refresh_token(token) if token else None
        if record is None or not record.is_live:
            raise InvalidRefreshToken("invalid refresh token")
        now = self._now()
        self._reject_if_stale(token, record, now)
        if not self.store.touch_refresh_token(token, now=now):
            raise InvalidRefreshToken("invalid refresh token")
        record.last_used_at = max(now, record.created_at)
        return record

    async def revoke(self, token: str) -> None:
        """Logout. Unknown or already dead tokens are a silent no-op."""
        if not token:
            return
        now = self._now()
        revoked = self.store.revoke_refresh_token(
            token, RevokedReason.LOGOUT, now=now
        )
        self.logger.info("refresh_token_logout", revoked=revoked)

    async def revoke_all(
        self, user_id: str, reason: RevokedReason | str = RevokedReason.LOGOUT_ALL
    ) -> int:
        """Revoke every live refresh token of ``user_id``; returns the count."""
        try:
            reason = RevokedReason(reason)
        except ValueError:
            raise ValidationError(
                "unsupported revocation reason", detail={"reason": str(reason)}
            )
        if reason not in BULK_REVOKE_REASONS:
            raise ValidationError(
                "unsupported revocation reason", detail={"reason": reason.value}
            )
        count = self.store.revoke_user_refresh_tokens(
            user_id, reason, now=self._now()
        )
        self.logger.info(
            "refresh_tokens_revoked_for_user",
            user_id=user_id,
            reason=reason.value,
            tokens_revoked=count,
        )
        return count

    async def list_sessions(self, user_id: str) -> List[SessionSummary]:
        return self.store.list_active_refresh_tokens(user_id, now=self._now())

    async def revoke_session(self, session_id: str, user_id: str) -> bool:
        """Revoke one of the caller's own sessions by id."""
        revoked = self.store.revoke_refresh_token_by_id(
            session_id, user_id, RevokedReason.LOGOUT, now=self._now()
        )
        if revoked:
            self.logger.info("session_revoked", user_id=user_id, token_id=session_id)
        return revoked

    def purge_stale(self) -> int:
        """Hard-delete expired, idle and long-revoked records."""
        return self.store.purge_stale_refresh_tokens(
            now=self._now(),
            idle_window=self.idle_window,
            revoked_retention=self.revoked_retention,
        )

    def _reject_if_stale(
        self, token: str, record: RefreshTokenRecord, now: datetime
    ) -> None:
        if record.is_expired(now):
            self.store.revoke_refresh_token(token, RevokedReason.EXPIRED, now=now)
            self.logger.info(
                "refresh_token_expired", user_id=record.user_id, token_id=record.id
            )
            raise InvalidRefreshToken("refresh token expired")
        if self._is_idle(record, now):
            self.store.revoke_refresh_token(token, RevokedReason.IDLE_TIMEOUT, now=now)
            self.logger.info(
                "refresh_token_idle_timeout",
                user_id=record.user_id,
                token_id=record.id,
                last_used_at=record.last_used_at.isoformat(),
            )
            raise InvalidRefreshToken("refresh token expired")

    async def _handle_reuse(self, record: RefreshTokenRecord) -> None:
        count = self.store.revoke_user_refresh_tokens(
            record.user_id, RevokedReason.SUSPICIOUS_ACTIVITY, now=self._now()
        )
        self.logger.warning(
            "refresh_token_reuse_detected",
            user_id=record.user_id,
            token_id=record.id,
            previous_reason=record.revoked_reason.value if record.revoked_reason else None,
            tokens_revoked=count,
        )
        raise TokenReuseDetected(
            "refresh token reuse detected", user_id=record.user_id
        )

from __future__ import annotations

import contextlib
import uuid
from datetime import datetime, timedelta
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokenward.logging import get_logger
from tokenward.service.tokens import hash_token
from tokenward.storage.errors import ConstraintViolation, PersistenceError
from tokenward.storage.models import RefreshTokenRecord, RevokedReason, SessionSummary

_REFRESH_TOKEN_COLUMNS = (
    "id, user_id, token_hash, expires_at, last_used_at, created_at, updated_at, "
    "is_revoked, revoked_at, revoked_reason, user_agent, ip_address, deleted_at"
)


class PostgresStore:
    """Postgres-backed refresh token store.

    Every revoke is a conditional ``UPDATE ... WHERE is_revoked = FALSE`` whose
    rowcount tells the caller whether it won; the soft-delete that frees the
    hash slot runs in the same transaction.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_refresh_token_table()

    def _connect(self):
        return self.pool.connection()

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[Any]:
        """Yield a pooled connection; commit on exit, wrap driver errors."""
        try:
            with self._connect() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "refresh token hash already in use", {"field": "token_hash"}
            ) from exc
        except psycopg.Error as exc:
            self.logger.error(
                "refresh_token_store_error",
                error_type=type(exc).__name__,
                sqlstate=getattr(exc, "sqlstate", None),
            )
            raise PersistenceError(
                "refresh token store unavailable", {"error_type": type(exc).__name__}
            ) from exc

    def close(self) -> None:
        self.pool.close()

    def _ensure_refresh_token_table(self) -> None:
        """Create the ``refresh_token`` table and its indexes if missing."""

        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS refresh_token (
                    id UUID PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    token_hash CHAR(64) NOT NULL,
                    expires_at TIMESTAMPTZ NOT NULL,
                    last_used_at TIMESTAMPTZ NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
                    revoked_at TIMESTAMPTZ,
                    revoked_reason TEXT CHECK (revoked_reason IN (
                        'logout', 'logout_all', 'password_change',
                        'suspicious_activity', 'expired', 'idle_timeout', 'rotated'
                    )),
                    user_agent TEXT,
                    ip_address TEXT,
                    deleted_at TIMESTAMPTZ,
                    CHECK (is_revoked = (revoked_at IS NOT NULL)),
                    CHECK (last_used_at >= created_at)
                )
                """
            )
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS refresh_token_live_hash_idx
                ON refresh_token (token_hash) WHERE deleted_at IS NULL
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS refresh_token_hash_idx ON refresh_token (token_hash)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS refresh_token_expires_idx ON refresh_token (expires_at)"
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS refresh_token_cleanup_idx
                ON refresh_token (is_revoked, revoked_at, last_used_at)
                """
            )

    @staticmethod
    def _record_from_row(row: dict) -> RefreshTokenRecord:
        reason = row.get("revoked_reason")
        return RefreshTokenRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            last_used_at=row["last_used_at"],
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
            is_revoked=bool(row.get("is_revoked", False)),
            revoked_at=row.get("revoked_at"),
            revoked_reason=RevokedReason(reason) if reason else None,
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
            deleted_at=row.get("deleted_at"),
        )

    @staticmethod
    def _insert_record(conn, record: RefreshTokenRecord) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (id, user_id, token_hash, expires_at, last_used_at, created_at, updated_at, user_agent, ip_address)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.id,
                record.user_id,
                record.token_hash,
                record.expires_at,
                record.last_used_at,
                record.created_at,
                record.updated_at,
                record.user_agent,
                record.ip_address,
            ),
        )

    @staticmethod
    def _revoke_live_hash(
        conn, token_hash: str, reason: RevokedReason, now: datetime
    ) -> Optional[dict]:
        """Mark then soft-delete the live row for ``token_hash``; None if none won."""
        row = conn.execute(
            """
            UPDATE refresh_token
            SET is_revoked = TRUE, revoked_at = %s, revoked_reason = %s, updated_at = %s
            WHERE token_hash = %s AND is_revoked = FALSE AND deleted_at IS NULL
            RETURNING id, user_id
            """,
            (now, RevokedReason(reason).value, now, token_hash),
        ).fetchone()
        if not row:
            return None
        conn.execute(
            "UPDATE refresh_token SET deleted_at = %s WHERE id = %s AND deleted_at IS NULL",
            (now, row["id"]),
        )
        return row

    # refresh tokens
    def create_refresh_token(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        *,
        now: datetime,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> RefreshTokenRecord:
        record = RefreshTokenRecord.new(
            user_id,
            hash_token(token),
            expires_at,
            now=now,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        with self._transaction() as conn:
            self._insert_record(conn, record)
        return record

    def find_refresh_token(
        self, token: str, *, include_deleted: bool = False
    ) -> Optional[RefreshTokenRecord]:
        deleted_clause = "" if include_deleted else "AND deleted_at IS NULL"
        with self._transaction() as conn:
            row = conn.execute(
                f"""
                SELECT {_REFRESH_TOKEN_COLUMNS} FROM refresh_token
                WHERE token_hash = %s {deleted_clause}
                ORDER BY (deleted_at IS NULL) DESC, created_at DESC, id DESC
                LIMIT 1
                """,
                (hash_token(token),),
            ).fetchone()
        if not row:
            return None
        return self._record_from_row(row)

    def revoke_refresh_token(
        self, token: str, reason: RevokedReason, *, now: datetime
    ) -> bool:
        with self._transaction() as conn:
            row = self._revoke_live_hash(conn, hash_token(token), reason, now)
        return row is not None

    def rotate_refresh_token(
        self,
        token: str,
        new_token: str,
        expires_at: datetime,
        *,
        now: datetime,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> Optional[RefreshTokenRecord]:
        """Retire ``token`` and insert its replacement in one transaction.

        Returns None when ``token`` is no longer live; a failed insert rolls
        the revocation back with it.
        """
        with self._transaction() as conn:
            row = self._revoke_live_hash(
                conn, hash_token(token), RevokedReason.ROTATED, now
            )
            if row is None:
                return None
            replacement = RefreshTokenRecord.new(
                str(row["user_id"]),
                hash_token(new_token),
                expires_at,
                now=now,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            self._insert_record(conn, replacement)
        return replacement

    def revoke_user_refresh_tokens(
        self, user_id: str, reason: RevokedReason, *, now: datetime
    ) -> int:
        with self._transaction() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE, revoked_at = %s, revoked_reason = %s, updated_at = %s
                WHERE user_id = %s AND is_revoked = FALSE AND deleted_at IS NULL
                """,
                (now, RevokedReason(reason).value, now, user_id),
            )
            count = result.rowcount
            if count:
                conn.execute(
                    """
                    UPDATE refresh_token SET deleted_at = %s
                    WHERE user_id = %s AND is_revoked = TRUE AND deleted_at IS NULL
                    """,
                    (now, user_id),
                )
        return max(count, 0)

    def touch_refresh_token(self, token: str, *, now: datetime) -> bool:
        with self._transaction() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token
                SET last_used_at = GREATEST(%s, created_at), updated_at = %s
                WHERE token_hash = %s AND is_revoked = FALSE AND deleted_at IS NULL
                """,
                (now, now, hash_token(token)),
            )
            return result.rowcount > 0

    def list_active_refresh_tokens(
        self, user_id: str, *, now: datetime
    ) -> List[SessionSummary]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT id, created_at, last_used_at, expires_at, user_agent, ip_address
                FROM refresh_token
                WHERE user_id = %s AND is_revoked = FALSE AND deleted_at IS NULL
                  AND expires_at > %s
                ORDER BY last_used_at DESC
                """,
                (user_id, now),
            ).fetchall()
        return [
            SessionSummary(
                id=str(row["id"]),
                created_at=row["created_at"],
                last_used_at=row["last_used_at"],
                expires_at=row["expires_at"],
                user_agent=row.get("user_agent"),
                ip_address=row.get("ip_address"),
            )
            for row in rows
        ]

    def revoke_refresh_token_by_id(
        self, session_id: str, user_id: str, reason: RevokedReason, *, now: datetime
    ) -> bool:
        try:
            uuid.UUID(session_id)
        except (TypeError, ValueError):
            return False
        with self._transaction() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE, revoked_at = %s, revoked_reason = %s, updated_at = %s
                WHERE id = %s AND user_id = %s AND is_revoked = FALSE AND deleted_at IS NULL
                """,
                (now, RevokedReason(reason).value, now, session_id, user_id),
            )
            if result.rowcount <= 0:
                return False
            conn.execute(
                "UPDATE refresh_token SET deleted_at = %s WHERE id = %s AND deleted_at IS NULL",
                (now, session_id),
            )
        return True

    def purge_stale_refresh_tokens(
        self,
        *,
        now: datetime,
        idle_window: timedelta,
        revoked_retention: timedelta,
    ) -> int:
        with self._transaction() as conn:
            result = conn.execute(
                """
                DELETE FROM refresh_token
                WHERE (
                    is_revoked = FALSE AND deleted_at IS NULL
                    AND (expires_at < %s OR last_used_at < %s)
                )
                   OR (is_revoked = TRUE AND revoked_at < %s)
                """,
                (now, now - idle_window, now - revoked_retention),
            )
            return max(result.rowcount, 0)

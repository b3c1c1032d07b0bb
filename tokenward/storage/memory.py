from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from tokenward.logging import get_logger
from tokenward.service.tokens import hash_token
from tokenward.storage.errors import ConstraintViolation, PersistenceError
from tokenward.storage.models import RefreshTokenRecord, RevokedReason, SessionSummary


class MemoryStore:
    """In-process refresh token store for development and tests.

    Mirrors the Postgres semantics: one live row per token hash, soft-deleted
    rows stay visible to ``include_deleted`` lookups, and every revoke is a
    check-and-set performed under the data lock.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        # token_hash -> record ids in insertion order, live and dead
        self._ids_by_hash: Dict[str, List[str]] = {}
        # RLock so compound operations can reuse the single-row helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _index(self, record: RefreshTokenRecord) -> None:
        self.refresh_tokens[record.id] = record
        self._ids_by_hash.setdefault(record.token_hash, []).append(record.id)

    def _unindex(self, record: RefreshTokenRecord) -> None:
        self.refresh_tokens.pop(record.id, None)
        ids = self._ids_by_hash.get(record.token_hash, [])
        if record.id in ids:
            ids.remove(record.id)
        if not ids:
            self._ids_by_hash.pop(record.token_hash, None)

    def _live_record(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        for record_id in self._ids_by_hash.get(token_hash, []):
            record = self.refresh_tokens.get(record_id)
            if record is not None and record.deleted_at is None:
                return record
        return None

    def _revoke_record(
        self, record: RefreshTokenRecord, reason: RevokedReason, now: datetime
    ) -> None:
        # Phase one marks the revocation, phase two releases the hash slot
        record.is_revoked = True
        record.revoked_at = now
        record.revoked_reason = RevokedReason(reason)
        record.updated_at = now
        record.deleted_at = now

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
        token_hash = hash_token(token)
        with self._data_lock:
            if self._live_record(token_hash) is not None:
                raise ConstraintViolation(
                    "refresh token hash already in use", {"field": "token_hash"}
                )
            record = RefreshTokenRecord.new(
                user_id,
                token_hash,
                expires_at,
                now=now,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            self._index(record)
            self._persist_state()
            return replace(record)

    def find_refresh_token(
        self, token: str, *, include_deleted: bool = False
    ) -> Optional[RefreshTokenRecord]:
        token_hash = hash_token(token)
        with self._data_lock:
            live = self._live_record(token_hash)
            if live is not None:
                return replace(live)
            if not include_deleted:
                return None
            history = [
                self.refresh_tokens[rid]
                for rid in self._ids_by_hash.get(token_hash, [])
                if rid in self.refresh_tokens
            ]
            if not history:
                return None
            newest = max(history, key=lambda r: (r.created_at, r.id))
            return replace(newest)

    def revoke_refresh_token(
        self, token: str, reason: RevokedReason, *, now: datetime
    ) -> bool:
        token_hash = hash_token(token)
        with self._data_lock:
            record = self._live_record(token_hash)
            if record is None or record.is_revoked:
                return False
            self._revoke_record(record, reason, now)
            self._persist_state()
            return True

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
        """Retire ``token`` and register its replacement as one step.

        Returns None when ``token`` is no longer live. If the snapshot write
        fails both changes are undone before the error propagates.
        """
        old_hash = hash_token(token)
        new_hash = hash_token(new_token)
        with self._data_lock:
            record = self._live_record(old_hash)
            if record is None or record.is_revoked:
                return None
            if self._live_record(new_hash) is not None:
                raise ConstraintViolation(
                    "refresh token hash already in use", {"field": "token_hash"}
                )
            before = replace(record)
            replacement = RefreshTokenRecord.new(
                record.user_id,
                new_hash,
                expires_at,
                now=now,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            self._revoke_record(record, RevokedReason.ROTATED, now)
            self._index(replacement)
            try:
                self._persist_state()
            except PersistenceError:
                self.refresh_tokens[record.id] = before
                self._unindex(replacement)
                raise
            return replace(replacement)

    def revoke_user_refresh_tokens(
        self, user_id: str, reason: RevokedReason, *, now: datetime
    ) -> int:
        with self._data_lock:
            live = [
                r
                for r in self.refresh_tokens.values()
                if r.user_id == user_id and r.is_live
            ]
            for record in live:
                self._revoke_record(record, reason, now)
            if live:
                self._persist_state()
            return len(live)

    def touch_refresh_token(self, token: str, *, now: datetime) -> bool:
        token_hash = hash_token(token)
        with self._data_lock:
            record = self._live_record(token_hash)
            if record is None or record.is_revoked:
                return False
            record.last_used_at = max(now, record.created_at)
            record.updated_at = now
            self._persist_state()
            return True

    def list_active_refresh_tokens(
        self, user_id: str, *, now: datetime
    ) -> List[SessionSummary]:
        with self._data_lock:
            active = [
                r
                for r in self.refresh_tokens.values()
                if r.user_id == user_id and r.is_live and r.expires_at > now
            ]
            active.sort(key=lambda r: r.last_used_at, reverse=True)
            return [r.to_summary() for r in active]

    def revoke_refresh_token_by_id(
        self, session_id: str, user_id: str, reason: RevokedReason, *, now: datetime
    ) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(session_id)
            if record is None or record.user_id != user_id or not record.is_live:
                return False
            self._revoke_record(record, reason, now)
            self._persist_state()
            return True

    def purge_stale_refresh_tokens(
        self,
        *,
        now: datetime,
        idle_window: timedelta,
        revoked_retention: timedelta,
    ) -> int:
        idle_cutoff = now - idle_window
        revoked_cutoff = now - revoked_retention
        with self._data_lock:
            # Expiry and idleness apply to live rows only; dead rows wait out
            # the revocation retention
            stale = [
                r
                for r in self.refresh_tokens.values()
                if (
                    r.is_live
                    and (r.expires_at < now or r.last_used_at < idle_cutoff)
                )
                or (r.revoked_at is not None and r.revoked_at < revoked_cutoff)
            ]
            for record in stale:
                self._unindex(record)
            if stale:
                self._persist_state()
            return len(stale)

    # persistence
    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token_hash": record.token_hash,
            "expires_at": self._serialize_datetime(record.expires_at),
            "last_used_at": self._serialize_datetime(record.last_used_at),
            "created_at": self._serialize_datetime(record.created_at),
            "updated_at": self._serialize_datetime(record.updated_at),
            "is_revoked": record.is_revoked,
            "revoked_at": self._serialize_datetime(record.revoked_at),
            "revoked_reason": record.revoked_reason.value if record.revoked_reason else None,
            "user_agent": record.user_agent,
            "ip_address": record.ip_address,
            "deleted_at": self._serialize_datetime(record.deleted_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        reason = data.get("revoked_reason")
        return RefreshTokenRecord(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            last_used_at=self._deserialize_datetime(data["last_used_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
            is_revoked=bool(data.get("is_revoked", False)),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoked_reason=RevokedReason(reason) if reason else None,
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "refresh_tokens": [
                self._serialize_refresh_token(r)
                for r in sorted(self.refresh_tokens.values(), key=lambda r: r.id)
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise PersistenceError("failed to persist in-memory state", {"path": str(path)}) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.refresh_tokens = {}
        self._ids_by_hash = {}
        records = [
            self._deserialize_refresh_token(r) for r in data.get("refresh_tokens", [])
        ]
        for record in sorted(records, key=lambda r: (r.created_at, r.id)):
            self._index(record)
        self.logger.info("memory_store_loaded", refresh_tokens=len(self.refresh_tokens))
        return True

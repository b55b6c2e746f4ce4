from __future__ import annotations

import json
import os
import tempfile
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from tillguard.logging import get_logger
from tillguard.storage.errors import ConstraintViolation
from tillguard.storage.models import (
    AuditEvent,
    AuditQuery,
    PinLockState,
    RefreshToken,
    Session,
    SessionActivity,
    User,
    ensure_aware,
    utcnow,
)

_MAX_ACTIVITY_PER_SESSION = 500


class MemoryStore:
    """In-process credential store persisted to a JSON state file.

    Every mutation rewrites ``<fs_root>/state/credential_store.json`` so PIN
    lockout counters and refresh-token revocations survive a restart. All
    tables share one re-entrant lock; rotation and PIN increments run entirely
    under it and are therefore atomic.
    """

    def __init__(self, fs_root: str = "/tmp/tillguard") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.session_activity: Dict[str, List[SessionActivity]] = {}
        self.audit_events: List[AuditEvent] = []
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        if not raw:
            return None
        return ensure_aware(datetime.fromisoformat(raw))

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        username: str,
        *,
        email: Optional[str] = None,
        role: str = "staff",
        is_active: bool = True,
        password_hash: Optional[str] = None,
        pin_hash: Optional[str] = None,
        meta: Optional[Dict] = None,
        user_id: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            lowered = username.lower()
            if any(u.username.lower() == lowered for u in self.users.values()):
                raise ConstraintViolation("username already exists", field="username")
            if user_id is not None and str(user_id) in self.users:
                raise ConstraintViolation("user id already exists", field="id")
            user = User(
                id=str(user_id) if user_id is not None else str(uuid.uuid4()),
                username=username,
                email=email,
                role=role,
                is_active=is_active,
                password_hash=password_hash,
                pin_hash=pin_hash,
                is_pin_enabled=pin_hash is not None,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(str(user_id))
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        lowered = username.lower()
        with self._data_lock:
            for user in self.users.values():
                if user.username.lower() == lowered:
                    return replace(user)
        return None

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(str(user_id))
            if not user:
                return None
            for key, value in fields.items():
                if not hasattr(user, key) or key == "id":
                    raise ValueError(f"unknown user field: {key}")
                setattr(user, key, value)
            if "pin_hash" in fields and "is_pin_enabled" not in fields:
                user.is_pin_enabled = fields["pin_hash"] is not None
            self._persist_state()
            return replace(user)

    # -- PIN lockout -------------------------------------------------------

    @staticmethod
    def _pin_state(user: User) -> PinLockState:
        return PinLockState(
            user_id=user.id,
            failed_attempts=user.failed_pin_attempts,
            locked_until=user.pin_locked_until,
            last_failed_at=user.pin_last_failed_at,
        )

    @staticmethod
    def _count_pin_failure(
        user: User, now: datetime, max_attempts: int, lockout_seconds: int, reset_after_seconds: int
    ) -> None:
        last = ensure_aware(user.pin_last_failed_at)
        locked = user.pin_locked_until is not None and ensure_aware(user.pin_locked_until) > now
        if not locked and last and now - last > timedelta(seconds=reset_after_seconds):
            user.failed_pin_attempts = 0
            user.pin_locked_until = None
        user.failed_pin_attempts += 1
        user.pin_last_failed_at = now
        if user.failed_pin_attempts >= max_attempts:
            user.pin_locked_until = now + timedelta(seconds=lockout_seconds)

    def record_failed_pin_attempt(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout_seconds: int,
        reset_after_seconds: int,
        now: Optional[datetime] = None,
    ) -> PinLockState:
        now = now or utcnow()
        with self._data_lock:
            user = self.users.get(str(user_id))
            if not user:
                raise ConstraintViolation("user does not exist", field="user_id")
            self._count_pin_failure(user, now, max_attempts, lockout_seconds, reset_after_seconds)
            self._persist_state()
            return self._pin_state(user)

    def reserve_pin_attempt(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout_seconds: int,
        reset_after_seconds: int,
        now: Optional[datetime] = None,
    ) -> Tuple[PinLockState, bool]:
        """Count an attempt as failed before its PIN is compared.

        Returns ``(state, False)`` without counting when the user is locked.
        """
        now = now or utcnow()
        with self._data_lock:
            user = self.users.get(str(user_id))
            if not user:
                raise ConstraintViolation("user does not exist", field="user_id")
            if user.pin_locked_until is not None and ensure_aware(user.pin_locked_until) > now:
                return self._pin_state(user), False
            self._count_pin_failure(user, now, max_attempts, lockout_seconds, reset_after_seconds)
            self._persist_state()
            return self._pin_state(user), True

    def release_pin_attempt(
        self, user_id: str, reservation: int, *, max_attempts: int
    ) -> Optional[PinLockState]:
        """Give back a reservation whose PIN matched.

        The counters reset fully when no later attempt was reserved; otherwise
        only this reservation is taken off.
        """
        with self._data_lock:
            user = self.users.get(str(user_id))
            if not user:
                return None
            if user.failed_pin_attempts == reservation:
                user.failed_pin_attempts = 0
                user.pin_locked_until = None
                user.pin_last_failed_at = None
            elif user.failed_pin_attempts > reservation:
                user.failed_pin_attempts -= 1
                if user.failed_pin_attempts < max_attempts:
                    user.pin_locked_until = None
            else:
                return self._pin_state(user)
            self._persist_state()
            return self._pin_state(user)

    def get_pin_lock_state(self, user_id: str) -> Optional[PinLockState]:
        with self._data_lock:
            user = self.users.get(str(user_id))
            return self._pin_state(user) if user else None

    def reset_pin_attempts(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(str(user_id))
            if not user:
                return
            if user.failed_pin_attempts or user.pin_locked_until or user.pin_last_failed_at:
                user.failed_pin_attempts = 0
                user.pin_locked_until = None
                user.pin_last_failed_at = None
                self._persist_state()

    def clear_expired_pin_lockouts(
        self, now: Optional[datetime] = None, reset_after_seconds: int = 24 * 60 * 60
    ) -> int:
        now = now or utcnow()
        window = timedelta(seconds=reset_after_seconds)
        cleared = 0
        with self._data_lock:
            for user in self.users.values():
                if not user.failed_pin_attempts and not user.pin_locked_until:
                    continue
                locked_until = ensure_aware(user.pin_locked_until)
                if locked_until and locked_until > now:
                    continue
                last = ensure_aware(user.pin_last_failed_at)
                if not locked_until and last and now - last <= window:
                    continue
                user.failed_pin_attempts = 0
                user.pin_locked_until = None
                user.pin_last_failed_at = None
                cleared += 1
            if cleared:
                self._persist_state()
        return cleared

    # -- refresh tokens ----------------------------------------------------

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if record.token_hash in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", field="token_hash")
            self.refresh_tokens[record.token_hash] = replace(record)
            self._persist_state()
            return record

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            return replace(record) if record else None

    def rotate_refresh_token(
        self, old_hash: str, new_record: RefreshToken, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        now = now or utcnow()
        with self._data_lock:
            old = self.refresh_tokens.get(old_hash)
            if old is None or not old.is_valid(now):
                return None
            if new_record.user_id != old.user_id:
                raise ValueError("rotated token must belong to the same user")
            old.is_revoked = True
            old.revoked_at = now
            old.replaced_by = new_record.token_hash
            self.refresh_tokens[new_record.token_hash] = replace(new_record)
            self._persist_state()
            return new_record

    def revoke_refresh_token(self, token_hash: str) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if record is None or record.is_revoked:
                return False
            record.is_revoked = True
            record.revoked_at = utcnow()
            self._persist_state()
            return True

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        now = utcnow()
        revoked = 0
        with self._data_lock:
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and not record.is_revoked:
                    record.is_revoked = True
                    record.revoked_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
        return revoked

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale = [
                h for h, rec in self.refresh_tokens.items()
                if ensure_aware(rec.expires_at) <= now
            ]
            for token_hash in stale:
                del self.refresh_tokens[token_hash]
            if stale:
                self._persist_state()
        return len(stale)

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", field="user_id")
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def touch_session(
        self, session_id: str, last_activity_at: datetime, expires_at: datetime
    ) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            sess.last_activity_at = last_activity_at
            sess.expires_at = expires_at
            self._persist_state()
            return True

    def deactivate_session(self, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            sess.is_active = False
            self._persist_state()
            return True

    def deactivate_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> List[str]:
        with self._data_lock:
            ended = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sess.is_active and sid != except_session_id
            ]
            for sid in ended:
                self.sessions[sid].is_active = False
            if ended:
                self._persist_state()
            return ended

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            sessions = [replace(s) for s in self.sessions.values() if s.user_id == user_id]
        return sorted(sessions, key=lambda s: ensure_aware(s.last_activity_at), reverse=True)

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> List[str]:
        now = now or utcnow()
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if not sess.is_live(now)]
            for sid in stale:
                del self.sessions[sid]
            if stale:
                self._persist_state()
            return stale

    # -- session activity --------------------------------------------------

    def append_session_activity(self, activity: SessionActivity) -> None:
        with self._data_lock:
            entries = self.session_activity.setdefault(activity.session_id, [])
            entries.append(activity)
            if len(entries) > _MAX_ACTIVITY_PER_SESSION:
                del entries[: len(entries) - _MAX_ACTIVITY_PER_SESSION]
            self._persist_state()

    def list_session_activity(self, session_id: str, limit: int = 50) -> List[SessionActivity]:
        with self._data_lock:
            entries = list(self.session_activity.get(session_id, []))
        entries.sort(key=lambda a: ensure_aware(a.created_at), reverse=True)
        return entries[:limit]

    # -- audit -------------------------------------------------------------

    def append_audit_events(self, events: Sequence[AuditEvent]) -> None:
        if not events:
            return
        with self._data_lock:
            self.audit_events.extend(events)
            self._persist_state()

    def query_audit_events(
        self, criteria: AuditQuery, limit: int = 100, offset: int = 0
    ) -> Tuple[List[AuditEvent], int]:
        with self._data_lock:
            matched = [e for e in self.audit_events if criteria.matches(e)]
        matched.sort(key=lambda e: ensure_aware(e.timestamp), reverse=True)
        return matched[offset : offset + limit], len(matched)

    def export_audit_events(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> List[AuditEvent]:
        criteria = AuditQuery(start=start, end=end)
        with self._data_lock:
            matched = [e for e in self.audit_events if criteria.matches(e)]
        matched.sort(key=lambda e: ensure_aware(e.timestamp))
        return matched

    def ping(self) -> bool:
        return self._state_path().parent.is_dir()

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
            "session_activity": [
                self._serialize_activity(a)
                for entries in self.session_activity.values()
                for a in entries
            ],
            "audit_events": [self._serialize_audit_event(e) for e in self.audit_events],
        }
        path = self._state_path()
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".state_", suffix=".tmp")
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle)
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise RuntimeError(f"failed to persist credential store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("credential_store_state_corrupt", path=str(path), error=str(exc))
            raise RuntimeError("credential store state file is corrupt") from exc
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.refresh_tokens = {
            r["token_hash"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.session_activity = {}
        for raw in data.get("session_activity", []):
            activity = self._deserialize_activity(raw)
            self.session_activity.setdefault(activity.session_id, []).append(activity)
        self.audit_events = [
            self._deserialize_audit_event(e) for e in data.get("audit_events", [])
        ]
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "role": user.role,
            "is_active": user.is_active,
            "password_hash": user.password_hash,
            "pin_hash": user.pin_hash,
            "is_pin_enabled": user.is_pin_enabled,
            "failed_pin_attempts": user.failed_pin_attempts,
            "pin_locked_until": self._serialize_datetime(user.pin_locked_until),
            "pin_last_failed_at": self._serialize_datetime(user.pin_last_failed_at),
            "created_at": self._serialize_datetime(user.created_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data.get("email"),
            role=data.get("role", "staff"),
            is_active=data.get("is_active", True),
            password_hash=data.get("password_hash"),
            pin_hash=data.get("pin_hash"),
            is_pin_enabled=data.get("is_pin_enabled", False),
            failed_pin_attempts=int(data.get("failed_pin_attempts", 0)),
            pin_locked_until=self._deserialize_datetime(data.get("pin_locked_until")),
            pin_last_failed_at=self._deserialize_datetime(data.get("pin_last_failed_at")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            meta=data.get("meta"),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "last_activity_at": self._serialize_datetime(session.last_activity_at),
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "is_active": session.is_active,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            last_activity_at=self._deserialize_datetime(data.get("last_activity_at"))
            or self._deserialize_datetime(data["created_at"]),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            is_active=data.get("is_active", True),
        )

    def _serialize_refresh_token(self, record: RefreshToken) -> dict:
        return {
            "id": record.id,
            "token_hash": record.token_hash,
            "user_id": record.user_id,
            "created_at": self._serialize_datetime(record.created_at),
            "expires_at": self._serialize_datetime(record.expires_at),
            "is_revoked": record.is_revoked,
            "revoked_at": self._serialize_datetime(record.revoked_at),
            "replaced_by": record.replaced_by,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            token_hash=data["token_hash"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            is_revoked=data.get("is_revoked", False),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            replaced_by=data.get("replaced_by"),
        )

    def _serialize_activity(self, activity: SessionActivity) -> dict:
        return {
            "id": activity.id,
            "session_id": activity.session_id,
            "user_id": activity.user_id,
            "type": activity.type,
            "created_at": self._serialize_datetime(activity.created_at),
            "details": activity.details,
        }

    def _deserialize_activity(self, data: dict) -> SessionActivity:
        return SessionActivity(
            id=data["id"],
            session_id=data["session_id"],
            user_id=data["user_id"],
            type=data["type"],
            created_at=self._deserialize_datetime(data["created_at"]),
            details=data.get("details"),
        )

    def _serialize_audit_event(self, event: AuditEvent) -> dict:
        return {
            "id": event.id,
            "category": event.category,
            "type": event.type,
            "status": event.status,
            "severity": event.severity,
            "timestamp": self._serialize_datetime(event.timestamp),
            "user_id": event.user_id,
            "username": event.username,
            "session_id": event.session_id,
            "ip_address": event.ip_address,
            "user_agent": event.user_agent,
            "resource_id": event.resource_id,
            "resource_type": event.resource_type,
            "action": event.action,
            "details": event.details,
        }

    def _deserialize_audit_event(self, data: dict) -> AuditEvent:
        return AuditEvent(
            id=data["id"],
            category=data["category"],
            type=data["type"],
            status=data["status"],
            severity=data["severity"],
            timestamp=self._deserialize_datetime(data["timestamp"]),
            user_id=data.get("user_id"),
            username=data.get("username"),
            session_id=data.get("session_id"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            resource_id=data.get("resource_id"),
            resource_type=data.get("resource_type"),
            action=data.get("action"),
            details=data.get("details"),
        )

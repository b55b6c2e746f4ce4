from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS pos_user (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT,
        role TEXT NOT NULL DEFAULT 'staff',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        password_hash TEXT,
        pin_hash TEXT,
        is_pin_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        failed_pin_attempts INTEGER NOT NULL DEFAULT 0,
        pin_locked_until TIMESTAMPTZ,
        pin_last_failed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        meta JSONB
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS pos_user_username_idx ON pos_user (lower(username))",
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL REFERENCES pos_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        replaced_by TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES pos_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_activity_at TIMESTAMPTZ NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS session_activity (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        type TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        details JSONB
    )
    """,
    "CREATE INDEX IF NOT EXISTS session_activity_session_idx ON session_activity (session_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS audit_event (
        id TEXT PRIMARY KEY,
        category TEXT NOT NULL,
        type TEXT NOT NULL,
        status TEXT NOT NULL,
        severity TEXT NOT NULL,
        ts TIMESTAMPTZ NOT NULL,
        user_id TEXT,
        username TEXT,
        session_id TEXT,
        ip_address TEXT,
        user_agent TEXT,
        resource_id TEXT,
        resource_type TEXT,
        action TEXT,
        details JSONB
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_event_ts_idx ON audit_event (ts)",
)

_USER_FIELDS = frozenset(
    {
        "username",
        "email",
        "role",
        "is_active",
        "password_hash",
        "pin_hash",
        "is_pin_enabled",
        "failed_pin_attempts",
        "pin_locked_until",
        "pin_last_failed_at",
        "meta",
    }
)


def _load_json(value: Any) -> Optional[dict]:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None
    return value


class PostgresStore:
    """Credential store on Postgres.

    Rotation locks the old refresh-token row with ``SELECT ... FOR UPDATE``
    inside one transaction; PIN failures are a single ``UPDATE ... RETURNING``
    so concurrent mismatches never lose an increment.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the credential tables if they are missing."""
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    # -- users -------------------------------------------------------------

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row.get("email"),
            role=row.get("role", "staff"),
            is_active=row.get("is_active", True),
            password_hash=row.get("password_hash"),
            pin_hash=row.get("pin_hash"),
            is_pin_enabled=row.get("is_pin_enabled", False),
            failed_pin_attempts=row.get("failed_pin_attempts", 0),
            pin_locked_until=ensure_aware(row.get("pin_locked_until")),
            pin_last_failed_at=ensure_aware(row.get("pin_last_failed_at")),
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
            meta=_load_json(row.get("meta")),
        )

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
        user = User(
            id=str(user_id) if user_id is not None else str(uuid.uuid4()),
            username=username,
            email=email,
            role=role,
            is_active=is_active,
            password_hash=password_hash,
            pin_hash=pin_hash,
            is_pin_enabled=pin_hash is not None,
            meta=meta or {},
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO pos_user (id, username, email, role, is_active, password_hash, pin_hash, is_pin_enabled, created_at, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.username,
                        user.email,
                        user.role,
                        user.is_active,
                        user.password_hash,
                        user.pin_hash,
                        user.is_pin_enabled,
                        user.created_at,
                        json.dumps(user.meta),
                    ),
                )
        except errors.UniqueViolation as exc:
            field = "id" if "pos_user_pkey" in str(exc) else "username"
            raise ConstraintViolation(f"{field} already exists", field=field)
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pos_user WHERE id = %s", (str(user_id),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pos_user WHERE lower(username) = lower(%s)", (username,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unknown user field: {sorted(unknown)[0]}")
        if "pin_hash" in fields and "is_pin_enabled" not in fields:
            fields["is_pin_enabled"] = fields["pin_hash"] is not None
        if not fields:
            return self.get_user(user_id)
        if "meta" in fields:
            fields["meta"] = json.dumps(fields["meta"])
        assignments = ", ".join(f"{name} = %s" for name in fields)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE pos_user SET {assignments} WHERE id = %s RETURNING *",
                (*fields.values(), str(user_id)),
            ).fetchone()
        return self._user_from_row(row) if row else None

    # -- PIN lockout -------------------------------------------------------

    @staticmethod
    def _pin_state_from_row(row: dict) -> PinLockState:
        return PinLockState(
            user_id=str(row["id"]),
            failed_attempts=row["failed_pin_attempts"],
            locked_until=ensure_aware(row.get("pin_locked_until")),
            last_failed_at=ensure_aware(row.get("pin_last_failed_at")),
        )

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
        reset_cutoff = now - timedelta(seconds=reset_after_seconds)
        lock_until = now + timedelta(seconds=lockout_seconds)
        with self._connect() as conn:
            row = conn.execute(
                """
                WITH base AS (
                    SELECT id,
                           CASE
                               WHEN (pin_locked_until IS NULL OR pin_locked_until <= %(now)s)
                                    AND pin_last_failed_at IS NOT NULL
                                    AND pin_last_failed_at < %(cutoff)s
                               THEN 0
                               ELSE failed_pin_attempts
                           END AS prior
                    FROM pos_user WHERE id = %(user_id)s FOR UPDATE
                )
                UPDATE pos_user u
                SET failed_pin_attempts = base.prior + 1,
                    pin_last_failed_at = %(now)s,
                    pin_locked_until = CASE
                        WHEN base.prior + 1 >= %(max)s THEN %(lock_until)s
                        WHEN base.prior = 0 THEN NULL
                        ELSE u.pin_locked_until
                    END
                FROM base
                WHERE u.id = base.id
                RETURNING u.id, u.failed_pin_attempts, u.pin_locked_until, u.pin_last_failed_at
                """,
                {
                    "now": now,
                    "cutoff": reset_cutoff,
                    "user_id": str(user_id),
                    "max": max_attempts,
                    "lock_until": lock_until,
                },
            ).fetchone()
        if not row:
            raise ConstraintViolation("user does not exist", field="user_id")
        return self._pin_state_from_row(row)

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

        Same statement as :meth:`record_failed_pin_attempt` but it matches no
        row while a lock is active, so a locked user is never counted.
        """
        now = now or utcnow()
        reset_cutoff = now - timedelta(seconds=reset_after_seconds)
        lock_until = now + timedelta(seconds=lockout_seconds)
        with self._connect() as conn:
            row = conn.execute(
                """
                WITH base AS (
                    SELECT id,
                           CASE
                               WHEN pin_last_failed_at IS NOT NULL
                                    AND pin_last_failed_at < %(cutoff)s
                               THEN 0
                               ELSE failed_pin_attempts
                           END AS prior
                    FROM pos_user
                    WHERE id = %(user_id)s
                      AND (pin_locked_until IS NULL OR pin_locked_until <= %(now)s)
                    FOR UPDATE
                )
                UPDATE pos_user u
                SET failed_pin_attempts = base.prior + 1,
                    pin_last_failed_at = %(now)s,
                    pin_locked_until = CASE
                        WHEN base.prior + 1 >= %(max)s THEN %(lock_until)s
                        WHEN base.prior = 0 THEN NULL
                        ELSE u.pin_locked_until
                    END
                FROM base
                WHERE u.id = base.id
                RETURNING u.id, u.failed_pin_attempts, u.pin_locked_until, u.pin_last_failed_at
                """,
                {
                    "now": now,
                    "cutoff": reset_cutoff,
                    "user_id": str(user_id),
                    "max": max_attempts,
                    "lock_until": lock_until,
                },
            ).fetchone()
        if row:
            return self._pin_state_from_row(row), True
        state = self.get_pin_lock_state(user_id)
        if state is None:
            raise ConstraintViolation("user does not exist", field="user_id")
        return state, False

    def release_pin_attempt(
        self, user_id: str, reservation: int, *, max_attempts: int
    ) -> Optional[PinLockState]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE pos_user
                SET failed_pin_attempts = CASE
                        WHEN failed_pin_attempts = %(reservation)s THEN 0
                        ELSE failed_pin_attempts - 1
                    END,
                    pin_locked_until = CASE
                        WHEN failed_pin_attempts = %(reservation)s THEN NULL
                        WHEN failed_pin_attempts - 1 < %(max)s THEN NULL
                        ELSE pin_locked_until
                    END,
                    pin_last_failed_at = CASE
                        WHEN failed_pin_attempts = %(reservation)s THEN NULL
                        ELSE pin_last_failed_at
                    END
                WHERE id = %(user_id)s AND failed_pin_attempts >= %(reservation)s
                RETURNING id, failed_pin_attempts, pin_locked_until, pin_last_failed_at
                """,
                {"user_id": str(user_id), "reservation": reservation, "max": max_attempts},
            ).fetchone()
        if row:
            return self._pin_state_from_row(row)
        return self.get_pin_lock_state(user_id)

    def get_pin_lock_state(self, user_id: str) -> Optional[PinLockState]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, failed_pin_attempts, pin_locked_until, pin_last_failed_at FROM pos_user WHERE id = %s",
                (str(user_id),),
            ).fetchone()
        return self._pin_state_from_row(row) if row else None

    def reset_pin_attempts(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE pos_user
                SET failed_pin_attempts = 0, pin_locked_until = NULL, pin_last_failed_at = NULL
                WHERE id = %s
                """,
                (str(user_id),),
            )

    def clear_expired_pin_lockouts(
        self, now: Optional[datetime] = None, reset_after_seconds: int = 24 * 60 * 60
    ) -> int:
        now = now or utcnow()
        cutoff = now - timedelta(seconds=reset_after_seconds)
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE pos_user
                SET failed_pin_attempts = 0, pin_locked_until = NULL, pin_last_failed_at = NULL
                WHERE (failed_pin_attempts > 0 OR pin_locked_until IS NOT NULL)
                  AND (
                      pin_locked_until <= %s
                      OR (pin_locked_until IS NULL
                          AND (pin_last_failed_at IS NULL OR pin_last_failed_at < %s))
                  )
                """,
                (now, cutoff),
            )
            return cur.rowcount or 0

    # -- refresh tokens ----------------------------------------------------

    @staticmethod
    def _refresh_from_row(row: dict) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            created_at=ensure_aware(row["created_at"]),
            expires_at=ensure_aware(row["expires_at"]),
            is_revoked=row.get("is_revoked", False),
            revoked_at=ensure_aware(row.get("revoked_at")),
            replaced_by=row.get("replaced_by"),
        )

    @staticmethod
    def _insert_refresh(conn, record: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (id, token_hash, user_id, created_at, expires_at, is_revoked)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                record.id,
                record.token_hash,
                record.user_id,
                record.created_at,
                record.expires_at,
                record.is_revoked,
            ),
        )

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                self._insert_refresh(conn, record)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", field="token_hash")
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", field="user_id")
        return record

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def rotate_refresh_token(
        self, old_hash: str, new_record: RefreshToken, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        now = now or utcnow()
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT * FROM refresh_token WHERE token_hash = %s FOR UPDATE",
                    (old_hash,),
                ).fetchone()
                if not row:
                    return None
                old = self._refresh_from_row(row)
                if not old.is_valid(now):
                    return None
                if new_record.user_id != old.user_id:
                    raise ValueError("rotated token must belong to the same user")
                conn.execute(
                    """
                    UPDATE refresh_token
                    SET is_revoked = TRUE, revoked_at = %s, replaced_by = %s
                    WHERE token_hash = %s
                    """,
                    (now, new_record.token_hash, old_hash),
                )
                self._insert_refresh(conn, new_record)
        return new_record

    def revoke_refresh_token(self, token_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET is_revoked = TRUE, revoked_at = now()
                WHERE token_hash = %s AND NOT is_revoked
                """,
                (token_hash,),
            )
            return bool(cur.rowcount)

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET is_revoked = TRUE, revoked_at = now()
                WHERE user_id = %s AND NOT is_revoked
                """,
                (user_id,),
            )
            return cur.rowcount or 0

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s", (now or utcnow(),)
            )
            return cur.rowcount or 0

    # -- sessions ----------------------------------------------------------

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=ensure_aware(row["created_at"]),
            expires_at=ensure_aware(row["expires_at"]),
            last_activity_at=ensure_aware(row["last_activity_at"]),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            is_active=row.get("is_active", True),
        )

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, created_at, expires_at, last_activity_at, ip_address, user_agent, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.created_at,
                        session.expires_at,
                        session.last_activity_at,
                        session.ip_address,
                        session.user_agent,
                        session.is_active,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", field="user_id")
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(
        self, session_id: str, last_activity_at: datetime, expires_at: datetime
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session SET last_activity_at = %s, expires_at = %s
                WHERE id = %s AND is_active
                """,
                (last_activity_at, expires_at, session_id),
            )
            return bool(cur.rowcount)

    def deactivate_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET is_active = FALSE WHERE id = %s AND is_active",
                (session_id,),
            )
            return bool(cur.rowcount)

    def deactivate_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE
                WHERE user_id = %s AND is_active AND id IS DISTINCT FROM %s
                RETURNING id
                """,
                (user_id, except_session_id),
            ).fetchall()
        return [str(row["id"]) for row in rows]

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY last_activity_at DESC",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s OR NOT is_active RETURNING id",
                (now or utcnow(),),
            ).fetchall()
        return [str(row["id"]) for row in rows]

    # -- session activity --------------------------------------------------

    def append_session_activity(self, activity: SessionActivity) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO session_activity (id, session_id, user_id, type, created_at, details)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    activity.id,
                    activity.session_id,
                    activity.user_id,
                    activity.type,
                    activity.created_at,
                    json.dumps(activity.details) if activity.details is not None else None,
                ),
            )

    def list_session_activity(self, session_id: str, limit: int = 50) -> List[SessionActivity]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM session_activity WHERE session_id = %s
                ORDER BY created_at DESC LIMIT %s
                """,
                (session_id, limit),
            ).fetchall()
        return [
            SessionActivity(
                id=str(row["id"]),
                session_id=str(row["session_id"]),
                user_id=str(row["user_id"]),
                type=row["type"],
                created_at=ensure_aware(row["created_at"]),
                details=_load_json(row.get("details")),
            )
            for row in rows
        ]

    # -- audit -------------------------------------------------------------

    @staticmethod
    def _audit_from_row(row: dict) -> AuditEvent:
        return AuditEvent(
            id=str(row["id"]),
            category=row["category"],
            type=row["type"],
            status=row["status"],
            severity=row["severity"],
            timestamp=ensure_aware(row["ts"]),
            user_id=row.get("user_id"),
            username=row.get("username"),
            session_id=row.get("session_id"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            resource_id=row.get("resource_id"),
            resource_type=row.get("resource_type"),
            action=row.get("action"),
            details=_load_json(row.get("details")),
        )

    def append_audit_events(self, events: Sequence[AuditEvent]) -> None:
        if not events:
            return
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.executemany(
                    """
                    INSERT INTO audit_event (id, category, type, status, severity, ts, user_id, username, session_id, ip_address, user_agent, resource_id, resource_type, action, details)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    [
                        (
                            e.id,
                            e.category,
                            e.type,
                            e.status,
                            e.severity,
                            e.timestamp,
                            e.user_id,
                            e.username,
                            e.session_id,
                            e.ip_address,
                            e.user_agent,
                            e.resource_id,
                            e.resource_type,
                            e.action,
                            json.dumps(e.details) if e.details is not None else None,
                        )
                        for e in events
                    ],
                )

    @staticmethod
    def _audit_where(criteria: AuditQuery) -> Tuple[str, list]:
        clauses: List[str] = []
        params: list = []
        for column in ("category", "type", "user_id", "severity", "status"):
            value = getattr(criteria, column)
            if value:
                clauses.append(f"{column} = %s")
                params.append(value)
        if criteria.start:
            clauses.append("ts >= %s")
            params.append(criteria.start)
        if criteria.end:
            clauses.append("ts <= %s")
            params.append(criteria.end)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def query_audit_events(
        self, criteria: AuditQuery, limit: int = 100, offset: int = 0
    ) -> Tuple[List[AuditEvent], int]:
        where, params = self._audit_where(criteria)
        with self._connect() as conn:
            total = conn.execute(
                f"SELECT count(*) AS total FROM audit_event {where}", params
            ).fetchone()["total"]
            rows = conn.execute(
                f"SELECT * FROM audit_event {where} ORDER BY ts DESC LIMIT %s OFFSET %s",
                [*params, limit, offset],
            ).fetchall()
        return [self._audit_from_row(row) for row in rows], int(total)

    def export_audit_events(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> List[AuditEvent]:
        where, params = self._audit_where(AuditQuery(start=start, end=end))
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_event {where} ORDER BY ts ASC", params
            ).fetchall()
        return [self._audit_from_row(row) for row in rows]

from contextlib import contextmanager
from datetime import timedelta

import pytest

from tillguard.storage.errors import ConstraintViolation
from tillguard.storage.models import AuditQuery, RefreshToken, utcnow
from tillguard.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, row=None, rows=None, rowcount=0):
        self._row = row
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return self._rows


class FakeConnection:
    """Replays scripted cursors and records every statement."""

    def __init__(self, results):
        self.results = list(results)
        self.statements = []
        self.transactions = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        return self.results.pop(0) if self.results else FakeCursor()


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


def _store(*results):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(FakeConnection(results))
    store.logger = None
    return store


def _token_row(record: RefreshToken, **overrides):
    row = {
        "id": record.id,
        "token_hash": record.token_hash,
        "user_id": record.user_id,
        "created_at": record.created_at,
        "expires_at": record.expires_at,
        "is_revoked": False,
        "revoked_at": None,
        "replaced_by": None,
    }
    row.update(overrides)
    return row


def test_rotate_locks_row_inside_transaction():
    now = utcnow()
    old = RefreshToken.new("u1", "old-hash", timedelta(days=1), now=now)
    new = RefreshToken.new("u1", "new-hash", timedelta(days=1), now=now)
    store = _store(FakeCursor(row=_token_row(old)))

    assert store.rotate_refresh_token("old-hash", new, now) is new

    conn = store.pool.conn
    assert conn.transactions == 1
    select, update, insert = (sql for sql, _ in conn.statements)
    assert select.endswith("FOR UPDATE")
    assert update.startswith("UPDATE refresh_token SET is_revoked = TRUE")
    assert conn.statements[1][1] == (now, "new-hash", "old-hash")
    assert insert.startswith("INSERT INTO refresh_token")


def test_rotate_revoked_token_writes_nothing():
    now = utcnow()
    old = RefreshToken.new("u1", "old-hash", timedelta(days=1), now=now)
    new = RefreshToken.new("u1", "new-hash", timedelta(days=1), now=now)
    store = _store(FakeCursor(row=_token_row(old, is_revoked=True)))

    assert store.rotate_refresh_token("old-hash", new, now) is None
    assert len(store.pool.conn.statements) == 1


def test_rotate_unknown_token():
    new = RefreshToken.new("u1", "new-hash", timedelta(days=1))
    store = _store(FakeCursor(row=None))
    assert store.rotate_refresh_token("missing", new) is None


def test_failed_pin_attempt_is_single_statement():
    now = utcnow()
    locked_until = now + timedelta(minutes=30)
    store = _store(
        FakeCursor(
            row={
                "id": "42",
                "failed_pin_attempts": 5,
                "pin_locked_until": locked_until,
                "pin_last_failed_at": now,
            }
        )
    )

    state = store.record_failed_pin_attempt(
        42, max_attempts=5, lockout_seconds=1800, reset_after_seconds=86400, now=now
    )

    assert state.failed_attempts == 5 and state.is_locked(now)
    sql, params = store.pool.conn.statements[0]
    assert "FOR UPDATE" in sql and "RETURNING" in sql
    assert params["user_id"] == "42"
    assert params["lock_until"] == locked_until


def test_failed_pin_attempt_for_missing_user():
    store = _store(FakeCursor(row=None))
    with pytest.raises(ConstraintViolation):
        store.record_failed_pin_attempt(
            "ghost", max_attempts=5, lockout_seconds=60, reset_after_seconds=60
        )


def test_reserve_pin_attempt_skips_locked_rows():
    now = utcnow()
    row = {"id": "42", "failed_pin_attempts": 2, "pin_locked_until": None, "pin_last_failed_at": now}
    store = _store(FakeCursor(row=row))

    state, granted = store.reserve_pin_attempt(
        "42", max_attempts=5, lockout_seconds=1800, reset_after_seconds=86400, now=now
    )

    assert granted and state.failed_attempts == 2
    sql, params = store.pool.conn.statements[0]
    assert "pin_locked_until IS NULL OR pin_locked_until <= %(now)s" in sql
    assert "FOR UPDATE" in sql and "RETURNING" in sql
    assert params["now"] == now


def test_reserve_pin_attempt_while_locked_reads_state():
    now = utcnow()
    locked = {
        "id": "42",
        "failed_pin_attempts": 5,
        "pin_locked_until": now + timedelta(minutes=10),
        "pin_last_failed_at": now,
    }
    store = _store(FakeCursor(row=None), FakeCursor(row=locked))

    state, granted = store.reserve_pin_attempt(
        "42", max_attempts=5, lockout_seconds=1800, reset_after_seconds=86400, now=now
    )

    assert not granted and state.is_locked(now)
    assert store.pool.conn.statements[1][0].startswith("SELECT id, failed_pin_attempts")


def test_reserve_pin_attempt_for_missing_user():
    store = _store(FakeCursor(row=None), FakeCursor(row=None))
    with pytest.raises(ConstraintViolation):
        store.reserve_pin_attempt("ghost", max_attempts=5, lockout_seconds=60, reset_after_seconds=60)


def test_release_pin_attempt_is_conditional():
    row = {"id": "42", "failed_pin_attempts": 0, "pin_locked_until": None, "pin_last_failed_at": None}
    store = _store(FakeCursor(row=row))

    state = store.release_pin_attempt("42", 3, max_attempts=5)

    assert state.failed_attempts == 0
    sql, params = store.pool.conn.statements[0]
    assert "WHERE id = %(user_id)s AND failed_pin_attempts >= %(reservation)s" in sql
    assert params == {"user_id": "42", "reservation": 3, "max": 5}


def test_update_user_rejects_unknown_fields():
    store = _store()
    with pytest.raises(ValueError):
        store.update_user("1", is_superuser=True)
    assert store.pool.conn.statements == []


def test_update_user_enables_pin_with_hash():
    store = _store(FakeCursor(row={"id": "1", "username": "alice", "pin_hash": "h", "is_pin_enabled": True}))
    user = store.update_user("1", pin_hash="h")
    sql, params = store.pool.conn.statements[0]
    assert "is_pin_enabled = %s" in sql
    assert params == ("h", True, "1")
    assert user.is_pin_enabled


def test_audit_where_clause():
    start = utcnow() - timedelta(days=1)
    where, params = PostgresStore._audit_where(AuditQuery(type="LOGIN_FAILURE", severity="WARNING", start=start))
    assert where == "WHERE type = %s AND severity = %s AND ts >= %s"
    assert params == ["LOGIN_FAILURE", "WARNING", start]
    assert PostgresStore._audit_where(AuditQuery()) == ("", [])

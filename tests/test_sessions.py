"""Tests for sliding-expiry sessions and the activity trail."""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from tillguard.service.sessions import (
    SESSION_CREATED,
    SESSION_EXPIRED,
    SESSION_TERMINATED,
    SessionManager,
)
from tillguard.storage.models import Session


@pytest.fixture
def user(store):
    return store.create_user("alice")


@pytest.fixture
def manager(store, settings):
    return SessionManager(store, settings)


def _at(moment):
    return patch("tillguard.service.sessions._now", return_value=moment)


class TestSlidingExpiry:
    async def test_create_sets_idle_timeout(self, manager, user):
        now = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
        with _at(now):
            session = await manager.create(user.id, ip_address="10.0.0.5", user_agent="till/1.0")

        assert session.expires_at == now + manager.timeout
        assert session.ip_address == "10.0.0.5"

    async def test_validate_resets_expiry_to_now_plus_timeout(self, manager, store, user):
        session = await manager.create(user.id)
        # Prior expiry far beyond the window must not survive validation
        store.sessions[session.id].expires_at = datetime.now(timezone.utc) + timedelta(days=30)
        manager._evict(session.id)

        t = datetime.now(timezone.utc) + timedelta(minutes=5)
        with _at(t):
            assert await manager.validate(session.id) is True

        stored = store.get_session(session.id)
        assert stored.expires_at == t + manager.timeout
        assert stored.last_activity_at == t

    async def test_concurrent_validations_converge(self, manager, store, user):
        session = await manager.create(user.id)
        t = datetime.now(timezone.utc) + timedelta(minutes=1)
        with _at(t):
            results = await asyncio.gather(*(manager.validate(session.id) for _ in range(8)))

        assert all(results)
        assert store.get_session(session.id).expires_at == t + manager.timeout

    async def test_expired_session_is_invalid(self, manager, user):
        session = await manager.create(user.id)
        with _at(datetime.now(timezone.utc) + manager.timeout + timedelta(minutes=1)):
            assert await manager.validate(session.id) is False
        await manager.drain_activity()

        types = [a.type for a in await manager.list_activity(session.id)]
        assert SESSION_EXPIRED in types

    async def test_unknown_session_is_invalid(self, manager):
        assert await manager.validate("missing") is False
        assert await manager.validate(None) is False
        assert await manager.get("missing") is None


class TestTermination:
    async def test_terminate_invalidates_cache(self, manager, user):
        session = await manager.create(user.id)
        assert await manager.validate(session.id)

        assert await manager.terminate(session.id) is True
        assert await manager.validate(session.id) is False
        assert await manager.terminate(session.id) is False

    async def test_terminated_elsewhere_is_detected(self, manager, store, settings, user):
        session = await manager.create(user.id)
        other_worker = SessionManager(store, settings)
        await other_worker.terminate(session.id)

        # This manager still has the session cached
        assert await manager.validate(session.id) is False

    async def test_terminate_all_except_keeps_current(self, manager, user):
        sessions = [await manager.create(user.id) for _ in range(3)]
        keep = sessions[0]

        assert await manager.terminate_all_except(user.id, keep.id) == 2
        assert await manager.validate(keep.id) is True
        for other in sessions[1:]:
            assert await manager.validate(other.id) is False
        assert [s.id for s in await manager.list_active(user.id)] == [keep.id]

    async def test_activity_records_lifecycle(self, manager, user):
        session = await manager.create(user.id)
        await manager.terminate(session.id, reason="TERMINATED_BY_USER")
        await manager.drain_activity()

        activity = await manager.list_activity(session.id)
        assert [a.type for a in activity] == [SESSION_TERMINATED, SESSION_CREATED]
        assert activity[0].details == {"reason": "TERMINATED_BY_USER"}


class TestFailureHandling:
    async def test_activity_write_failure_is_swallowed(self, manager, store, user):
        def _broken(activity):
            raise RuntimeError("disk full")

        store.append_session_activity = _broken
        session = await manager.create(user.id)
        await manager.drain_activity()

        assert await manager.validate(session.id) is True

    async def test_store_timeout_fails_closed(self, store, settings, user):
        session = Session.new(user.id, 60)
        store.create_session(session)
        manager = SessionManager(store, settings.model_copy(update={"store_timeout_seconds": 0.05}))

        def _slow(session_id):
            time.sleep(0.3)
            return None

        store.get_session = _slow
        assert await manager.validate(session.id) is False


class TestSweep:
    async def test_sweep_removes_expired_and_inactive(self, manager, store, user):
        live = await manager.create(user.id)
        expired = await manager.create(user.id)
        ended = await manager.create(user.id)
        store.sessions[expired.id].expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        await manager.terminate(ended.id)

        assert await manager.sweep_expired() == 2
        assert store.get_session(live.id) is not None
        assert store.get_session(expired.id) is None
        assert store.get_session(ended.id) is None

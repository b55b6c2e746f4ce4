from __future__ import annotations

import asyncio
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set

from tillguard.config import Settings
from tillguard.logging import get_logger
from tillguard.service.bounded import run_bounded
from tillguard.service.errors import StoreUnavailableError
from tillguard.storage.models import Session, SessionActivity

logger = get_logger(__name__)

SESSION_CREATED = "SESSION_CREATED"
SESSION_TERMINATED = "SESSION_TERMINATED"
SESSION_EXPIRED = "SESSION_EXPIRED"

_MAX_SESSION_CACHE_SIZE = 10000


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Sliding-expiry sessions with a write-through in-process cache.

    Every successful ``validate`` pushes ``expires_at`` to now plus the idle
    timeout. Concurrent validations each write their own timestamps and the
    last write wins, which can only lengthen a session relative to either
    caller's view. Unknown and expired ids both validate as ``False``.
    """

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.timeout = timedelta(minutes=settings.session_timeout_minutes)
        self._store_timeout = settings.store_timeout_seconds
        self._cache: Dict[str, Session] = {}
        self._cache_lock = threading.Lock()
        self._pending: Set[asyncio.Task] = set()

    async def _call(self, func, *args, **kwargs):
        return await run_bounded(func, *args, timeout=self._store_timeout, **kwargs)

    def _cache_session(self, session: Session) -> None:
        with self._cache_lock:
            if len(self._cache) >= _MAX_SESSION_CACHE_SIZE and session.id not in self._cache:
                oldest = sorted(self._cache.values(), key=lambda s: s.expires_at)
                for stale in oldest[: max(1, _MAX_SESSION_CACHE_SIZE // 10)]:
                    self._cache.pop(stale.id, None)
            self._cache[session.id] = replace(session)

    def _cached(self, session_id: str) -> Optional[Session]:
        with self._cache_lock:
            session = self._cache.get(session_id)
            return replace(session) if session else None

    def _evict(self, session_id: str) -> None:
        with self._cache_lock:
            self._cache.pop(session_id, None)

    # -- activity ----------------------------------------------------------

    def _record_activity(
        self, session_id: str, user_id: str, activity_type: str, details: Optional[dict] = None
    ) -> None:
        activity = SessionActivity(
            id=str(uuid.uuid4()),
            session_id=session_id,
            user_id=user_id,
            type=activity_type,
            created_at=_now(),
            details=details,
        )
        task = asyncio.get_running_loop().create_task(self._write_activity(activity))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write_activity(self, activity: SessionActivity) -> None:
        try:
            await self._call(self.store.append_session_activity, activity)
        except Exception as exc:
            logger.warning(
                "session_activity_write_failed",
                session_id=activity.session_id,
                activity=activity.type,
                error=str(exc),
            )

    async def drain_activity(self) -> None:
        """Wait for outstanding activity writes."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # -- lifecycle ---------------------------------------------------------

    async def create(
        self,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        session = Session.new(
            user_id,
            self.settings.session_timeout_minutes,
            ip_address=ip_address,
            user_agent=user_agent,
            now=_now(),
        )
        await self._call(self.store.create_session, session)
        self._cache_session(session)
        self._record_activity(
            session.id,
            user_id,
            SESSION_CREATED,
            {"ip_address": ip_address, "user_agent": user_agent},
        )
        logger.info("session_created", session_id=session.id, user_id=user_id)
        return session

    async def _load(self, session_id: str) -> Optional[Session]:
        session = self._cached(session_id)
        if session is not None:
            return session
        return await self._call(self.store.get_session, session_id)

    async def validate(self, session_id: Optional[str]) -> bool:
        if not session_id:
            return False
        try:
            session = await self._load(session_id)
        except StoreUnavailableError:
            return False
        if session is None:
            return False
        now = _now()
        if not session.is_live(now):
            self._evict(session_id)
            if session.is_active:
                self._record_activity(session_id, session.user_id, SESSION_EXPIRED)
            return False
        session.last_activity_at = now
        session.expires_at = now + self.timeout
        try:
            touched = await self._call(
                self.store.touch_session, session_id, session.last_activity_at, session.expires_at
            )
        except StoreUnavailableError:
            return False
        if not touched:
            # Terminated by another worker since it was cached
            self._evict(session_id)
            return False
        self._cache_session(session)
        return True

    async def get(self, session_id: str) -> Optional[Session]:
        """Return the session if it is active and unexpired, without extending it."""
        if not session_id:
            return None
        session = await self._load(session_id)
        if session is None or not session.is_live(_now()):
            return None
        return session

    async def terminate(self, session_id: str, *, reason: str = "USER_LOGOUT") -> bool:
        if not session_id:
            return False
        session = await self._load(session_id)
        ended = await self._call(self.store.deactivate_session, session_id)
        self._evict(session_id)
        if ended and session is not None:
            self._record_activity(session_id, session.user_id, SESSION_TERMINATED, {"reason": reason})
            logger.info("session_terminated", session_id=session_id, reason=reason)
        return bool(ended)

    async def terminate_all_except(
        self, user_id: str, keep_session_id: Optional[str] = None, *, reason: str = "USER_LOGOUT_ALL"
    ) -> int:
        ended: List[str] = await self._call(
            self.store.deactivate_user_sessions, user_id, keep_session_id
        )
        for session_id in ended:
            self._evict(session_id)
            self._record_activity(session_id, user_id, SESSION_TERMINATED, {"reason": reason})
        with self._cache_lock:
            # Cached copies the store no longer reports as active
            stale = [
                sid
                for sid, sess in self._cache.items()
                if sess.user_id == user_id and sid != keep_session_id
            ]
            for sid in stale:
                self._cache.pop(sid, None)
        logger.info("sessions_terminated", user_id=user_id, count=len(ended))
        return len(ended)

    async def list_active(self, user_id: str) -> List[Session]:
        sessions = await self._call(self.store.list_user_sessions, user_id)
        now = _now()
        return [s for s in sessions if s.is_live(now)]

    async def list_activity(self, session_id: str, limit: int = 50) -> List[SessionActivity]:
        return await self._call(self.store.list_session_activity, session_id, limit)

    async def sweep_expired(self) -> int:
        removed = await self._call(self.store.delete_expired_sessions, _now())
        for session_id in removed:
            self._evict(session_id)
        if removed:
            logger.debug("sessions_swept", removed=len(removed))
        return len(removed)

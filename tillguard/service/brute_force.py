from __future__ import annotations

import asyncio
import hashlib
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Dict, Optional, TypeVar

from redis.exceptions import RedisError

from tillguard.config import Settings
from tillguard.logging import get_logger
from tillguard.service.bounded import run_bounded
from tillguard.service.errors import RateLimitedError, StoreUnavailableError
from tillguard.storage.kv import KeyValueStore
from tillguard.storage.models import PinLockState

logger = get_logger(__name__)

T = TypeVar("T")

_ATTEMPTS_PREFIX = "login:attempts:"
_LOCK_PREFIX = "login:locked:"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class LoginRateLimiter:
    """Fixed-window limiter for password logins keyed by identity and origin.

    ``acquire`` counts every attempt before its password is compared, so
    concurrent guesses cannot all slip under the threshold. The counter lives
    for one lockout window from the first attempt. Reaching ``max_attempts``
    adds a lock entry holding the unlock time; ``acquire`` rejects until that
    entry expires. A successful login clears both.

    Key-value failures and timeouts deny the attempt.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        max_attempts: int = 5,
        lockout_minutes: int = 15,
        timeout: float = 5.0,
    ) -> None:
        self.kv = kv
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_minutes * 60
        self._timeout = timeout

    @staticmethod
    def key_for(identity: str, ip_address: Optional[str]) -> str:
        raw = f"{(identity or '').strip().lower()}|{ip_address or 'unknown'}"
        return hashlib.sha256(raw.encode()).hexdigest()

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, self._timeout)
        except (asyncio.TimeoutError, RedisError, OSError) as exc:
            logger.error("login_rate_limit_store_failed", error=str(exc) or type(exc).__name__)
            raise StoreUnavailableError(detail={"operation": "login_rate_limit"})

    def _limited(self, key: str, remaining: float) -> RateLimitedError:
        minutes = max(1, math.ceil(remaining / 60))
        logger.warning("login_rate_limited", key_hash=key[:12], minutes=minutes)
        return RateLimitedError(
            f"Too many login attempts. Please try again in {minutes} minutes.",
            retry_after_minutes=minutes,
        )

    async def _lock(self, key: str, attempts: int) -> None:
        locked_until = _now().timestamp() + self.lockout_seconds
        # The counter is left to expire; it was started no later than the lock
        await self._bounded(self.kv.set(_LOCK_PREFIX + key, repr(locked_until), self.lockout_seconds))
        logger.warning("login_locked_out", key_hash=key[:12], attempts=attempts)

    async def remaining_seconds(self, key: str) -> float:
        locked_until = await self._bounded(self.kv.get(_LOCK_PREFIX + key))
        if locked_until is None:
            return 0.0
        return max(0.0, float(locked_until) - _now().timestamp())

    async def check(self, key: str) -> None:
        remaining = await self.remaining_seconds(key)
        if remaining > 0:
            raise self._limited(key, remaining)

    async def acquire(self, key: str) -> int:
        """Reserve one attempt for ``key`` and return its number in the window.

        Raises :class:`RateLimitedError` while locked or once the reserved
        number passes ``max_attempts``.
        """
        await self.check(key)
        attempts = await self._bounded(self.kv.incr(_ATTEMPTS_PREFIX + key, self.lockout_seconds))
        if attempts > self.max_attempts:
            if await self.remaining_seconds(key) <= 0:
                await self._lock(key, attempts)
            raise self._limited(key, self.lockout_seconds)
        return attempts

    async def record_failure(self, key: str, attempt: int) -> int:
        """Settle a failed reservation; the last permitted one locks the key."""
        if attempt >= self.max_attempts:
            await self._lock(key, attempt)
        return attempt

    async def reset(self, key: str) -> None:
        await self._bounded(self.kv.delete(_ATTEMPTS_PREFIX + key))
        await self._bounded(self.kv.delete(_LOCK_PREFIX + key))

    async def sweep(self) -> int:
        return await self.kv.sweep("login:")


@dataclass
class PinLockStatus:
    is_locked: bool
    remaining_ms: int
    attempts: int


@dataclass
class PinAttempt:
    granted: bool
    status: PinLockStatus
    reservation: int

    @property
    def prior_attempts(self) -> int:
        return max(0, self.reservation - 1)


class PinLockoutService:
    """Durable PIN lockout with a process-local read-through cache.

    The credential store holds the authoritative counters. Login attempts are
    counted there atomically before the PIN is compared, so parallel guesses
    cannot slip under the threshold.
    The cache only short-circuits lookups for users already known to be
    locked and is refreshed from every store result.
    """

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.max_attempts = settings.pin_max_attempts
        self.lockout = timedelta(minutes=settings.pin_lockout_minutes)
        self.reset_after = timedelta(hours=settings.pin_attempt_reset_hours)
        self._timeout = settings.store_timeout_seconds
        self._cache: Dict[str, PinLockState] = {}
        self._lock = threading.Lock()

    def _remember(self, state: PinLockState) -> None:
        with self._lock:
            self._cache[state.user_id] = state

    @staticmethod
    def _status(state: Optional[PinLockState], now: datetime) -> PinLockStatus:
        if state is None:
            return PinLockStatus(is_locked=False, remaining_ms=0, attempts=0)
        return PinLockStatus(
            is_locked=state.is_locked(now),
            remaining_ms=state.remaining_ms(now),
            attempts=state.failed_attempts,
        )

    async def is_pin_locked(self, user_id: str) -> PinLockStatus:
        now = _now()
        with self._lock:
            cached = self._cache.get(user_id)
        if cached is not None and cached.is_locked(now):
            return self._status(cached, now)
        state = await run_bounded(
            self.store.get_pin_lock_state, user_id, timeout=self._timeout
        )
        if state is not None:
            self._remember(state)
        return self._status(state, now)

    async def record_failed_attempt(self, user_id: str) -> PinLockStatus:
        now = _now()
        state = await run_bounded(
            self.store.record_failed_pin_attempt,
            user_id,
            max_attempts=self.max_attempts,
            lockout_seconds=int(self.lockout.total_seconds()),
            reset_after_seconds=int(self.reset_after.total_seconds()),
            now=now,
            timeout=self._timeout,
        )
        self._remember(state)
        status = self._status(state, now)
        if status.is_locked:
            logger.warning("pin_locked", user_id=user_id, attempts=status.attempts)
        else:
            logger.info("pin_attempt_failed", user_id=user_id, attempts=status.attempts)
        return status

    async def reserve_attempt(self, user_id: str) -> PinAttempt:
        """Count an attempt against ``user_id`` before its PIN is compared.

        A locked user is refused without being counted. A granted attempt
        that turns out to match must be handed back through :meth:`release`.
        """
        now = _now()
        with self._lock:
            cached = self._cache.get(user_id)
        if cached is not None and cached.is_locked(now):
            return PinAttempt(granted=False, status=self._status(cached, now), reservation=0)
        state, granted = await run_bounded(
            self.store.reserve_pin_attempt,
            user_id,
            max_attempts=self.max_attempts,
            lockout_seconds=int(self.lockout.total_seconds()),
            reset_after_seconds=int(self.reset_after.total_seconds()),
            now=now,
            timeout=self._timeout,
        )
        self._remember(state)
        return PinAttempt(
            granted=granted,
            status=self._status(state, now),
            reservation=state.failed_attempts if granted else 0,
        )

    def settle_failure(self, user_id: str, attempt: PinAttempt) -> PinLockStatus:
        status = attempt.status
        if status.is_locked:
            logger.warning("pin_locked", user_id=user_id, attempts=status.attempts)
        else:
            logger.info("pin_attempt_failed", user_id=user_id, attempts=status.attempts)
        return status

    async def release(self, user_id: str, attempt: PinAttempt) -> None:
        state = await run_bounded(
            self.store.release_pin_attempt,
            user_id,
            attempt.reservation,
            max_attempts=self.max_attempts,
            timeout=self._timeout,
        )
        if state is not None:
            self._remember(state)

    async def reset(self, user_id: str) -> None:
        with self._lock:
            self._cache.pop(user_id, None)
        await run_bounded(self.store.reset_pin_attempts, user_id, timeout=self._timeout)

    async def sweep(self) -> int:
        now = _now()
        with self._lock:
            for user_id in [u for u, s in self._cache.items() if not s.is_locked(now)]:
                del self._cache[user_id]
        cleared = await run_bounded(
            self.store.clear_expired_pin_lockouts,
            now,
            int(self.reset_after.total_seconds()),
            timeout=self._timeout,
        )
        if cleared:
            logger.debug("pin_lockouts_swept", cleared=cleared)
        return cleared

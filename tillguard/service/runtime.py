from __future__ import annotations

import threading
from typing import List, Optional, Union
from urllib.parse import urlparse, urlunparse

from tillguard.config import get_settings, reset_settings_cache
from tillguard.logging import get_logger, sanitize_error_message
from tillguard.service.audit import AuditLogger
from tillguard.service.auth import AuthService
from tillguard.service.background import PeriodicTask
from tillguard.service.brute_force import LoginRateLimiter, PinLockoutService
from tillguard.service.csrf import CsrfGuard
from tillguard.service.refresh_tokens import RefreshTokenService
from tillguard.service.sessions import SessionManager
from tillguard.service.tokens import TokenSigner
from tillguard.storage.kv import MemoryKV
from tillguard.storage.memory import MemoryStore
from tillguard.storage.postgres import PostgresStore
from tillguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the store, key-value backends and security services for the app."""

    def __init__(self):
        self.settings = get_settings()
        use_memory = self.settings.use_memory_store or self.settings.test_mode
        logger.info(
            "runtime_init_started",
            use_memory_store=use_memory,
            test_mode=self.settings.test_mode,
            environment=self.settings.environment.value,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if use_memory
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if use_memory else "postgres",
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url, socket_timeout=self.settings.store_timeout_seconds
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the token blacklist and CSRF tokens; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
            )

        self.kv = self.cache if self.cache is not None else MemoryKV()
        limiter_kv = (
            self.cache
            if self.cache is not None and self.settings.login_rate_limit_shared
            else MemoryKV()
        )

        self.audit = AuditLogger(self.store, timeout=self.settings.store_timeout_seconds)
        if self.settings.audit_buffering:
            self.audit.enable_buffering(
                self.settings.audit_buffer_size,
                self.settings.audit_flush_interval_seconds,
                self.settings.audit_flush_chunk_size,
            )
        self.signer = TokenSigner(self.settings, self.kv)
        self.refresh_tokens = RefreshTokenService(self.store, self.settings)
        self.sessions = SessionManager(self.store, self.settings)
        self.login_limiter = LoginRateLimiter(
            limiter_kv,
            max_attempts=self.settings.login_max_attempts,
            lockout_minutes=self.settings.login_lockout_minutes,
            timeout=self.settings.store_timeout_seconds,
        )
        self.pin_lockout = PinLockoutService(self.store, self.settings)
        self.csrf = CsrfGuard(
            self.kv,
            secret=self.settings.effective_csrf_secret,
            ttl_minutes=self.settings.csrf_token_ttl_minutes,
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            signer=self.signer,
            refresh_tokens=self.refresh_tokens,
            sessions=self.sessions,
            login_limiter=self.login_limiter,
            pin_lockout=self.pin_lockout,
            csrf=self.csrf,
            audit=self.audit,
        )
        self._tasks: List[PeriodicTask] = []
        logger.info("runtime_initialized", redis_enabled=self.cache is not None)

    def start_background_tasks(self) -> None:
        if self._tasks:
            return

        async def _sweep_login_limiter_and_blacklist() -> int:
            removed = await self.signer.sweep_blacklist()
            return removed + await self.login_limiter.sweep()

        s = self.settings
        self._tasks = [
            PeriodicTask(
                "token_blacklist_sweep",
                s.blacklist_sweep_interval_seconds,
                _sweep_login_limiter_and_blacklist,
            ),
            PeriodicTask("session_sweep", s.session_sweep_interval_seconds, self.sessions.sweep_expired),
            PeriodicTask("csrf_sweep", s.csrf_sweep_interval_seconds, self.csrf.sweep),
            PeriodicTask(
                "refresh_token_sweep", s.refresh_sweep_interval_seconds, self.refresh_tokens.sweep_expired
            ),
            PeriodicTask("pin_lockout_sweep", s.pin_sweep_interval_seconds, self.pin_lockout.sweep),
        ]
        for task in self._tasks:
            task.start()
        self.audit.start()
        logger.info("background_tasks_started", count=len(self._tasks))

    async def stop_background_tasks(self) -> None:
        for task in self._tasks:
            await task.stop()
        self._tasks = []
        await self.audit.stop()

    @property
    def background_tasks(self) -> List[PeriodicTask]:
        return list(self._tasks)

    async def close(self) -> None:
        await self.stop_background_tasks()
        if self.audit.buffering:
            await self.audit.flush()
        await self.sessions.drain_activity()
        if self.cache is not None:
            await self.cache.close()
        if hasattr(self.store, "close"):
            self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a freshly read environment."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        runtime = Runtime()
        return runtime

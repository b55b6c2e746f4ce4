from __future__ import annotations

import asyncio
import threading
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional, Union

from tillguard.logging import get_logger, redact_sensitive
from tillguard.service.background import PeriodicTask
from tillguard.service.bounded import DEFAULT_STORE_TIMEOUT_SECONDS, run_bounded
from tillguard.service.errors import StoreUnavailableError
from tillguard.storage.models import AuditEvent, AuditQuery

logger = get_logger(__name__)


class AuditCategory(str, Enum):
    AUTHENTICATION = "AUTHENTICATION"
    AUTHORIZATION = "AUTHORIZATION"
    SECURITY = "SECURITY"
    USER_MANAGEMENT = "USER_MANAGEMENT"
    SYSTEM = "SYSTEM"
    DATA = "DATA"


class Severity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AuditStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    WARNING = "WARNING"


class AuthEventType(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    PIN_LOGIN_SUCCESS = "PIN_LOGIN_SUCCESS"
    PIN_LOGIN_FAILURE = "PIN_LOGIN_FAILURE"
    LOGOUT = "LOGOUT"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    TOKEN_VALIDATION = "TOKEN_VALIDATION"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_TERMINATED = "SESSION_TERMINATED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    PIN_CHANGED = "PIN_CHANGED"


class SecurityEventType(str, Enum):
    PERMISSION_DENIED = "PERMISSION_DENIED"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    TOKEN_BLACKLISTED = "TOKEN_BLACKLISTED"
    CSRF_VIOLATION = "CSRF_VIOLATION"
    BRUTE_FORCE_ATTEMPT = "BRUTE_FORCE_ATTEMPT"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
    REFRESH_TOKEN_REUSE = "REFRESH_TOKEN_REUSE"


_AUTH_FAILURE_WARNINGS = frozenset(
    {
        AuthEventType.LOGIN_FAILURE,
        AuthEventType.PIN_LOGIN_FAILURE,
        AuthEventType.RATE_LIMIT_EXCEEDED,
    }
)

_SECURITY_ERRORS = frozenset(
    {
        SecurityEventType.BRUTE_FORCE_ATTEMPT,
        SecurityEventType.SUSPICIOUS_ACTIVITY,
        SecurityEventType.CSRF_VIOLATION,
        SecurityEventType.TOKEN_BLACKLISTED,
        SecurityEventType.REFRESH_TOKEN_REUSE,
    }
)


def auth_event_severity(event_type: AuthEventType, status: AuditStatus) -> Severity:
    if status != AuditStatus.FAILURE:
        return Severity.INFO
    if event_type in _AUTH_FAILURE_WARNINGS:
        return Severity.WARNING
    return Severity.ERROR


def security_event_severity(event_type: SecurityEventType) -> Severity:
    if event_type in _SECURITY_ERRORS:
        return Severity.ERROR
    return Severity.WARNING


def _value(item: Any) -> Any:
    return item.value if isinstance(item, Enum) else item


@dataclass
class AuditQueryResult:
    events: List[AuditEvent]
    total: int


class AuditLogger:
    """Append-only audit sink over the credential store.

    Every event is also written to the structured log as ``audit_event``, so a
    store outage degrades the durable trail without losing the record. With
    buffering on, events queue in memory and are flushed in chunks either when
    the buffer fills or on the flush interval; a chunk that fails goes back to
    the front of the queue together with everything after it.
    """

    def __init__(self, store, *, timeout: float = DEFAULT_STORE_TIMEOUT_SECONDS) -> None:
        self.store = store
        self._timeout = timeout
        self._buffer: List[AuditEvent] = []
        self._buffer_lock = threading.Lock()
        self._flush_lock = asyncio.Lock()
        self.buffering = False
        self.buffer_size = 100
        self.chunk_size = 25
        self.flush_interval_seconds = 10
        self._flush_task: Optional[PeriodicTask] = None

    # -- buffering ---------------------------------------------------------

    def enable_buffering(
        self, buffer_size: int = 100, flush_interval_seconds: int = 10, chunk_size: int = 25
    ) -> None:
        self.buffering = True
        self.buffer_size = buffer_size
        self.flush_interval_seconds = flush_interval_seconds
        self.chunk_size = chunk_size

    async def disable_buffering(self) -> None:
        self.buffering = False
        await self.stop()
        await self.flush()

    def start(self) -> None:
        if not self.buffering or self._flush_task is not None:
            return
        self._flush_task = PeriodicTask("audit_flush", self.flush_interval_seconds, self.flush)
        self._flush_task.start()

    async def stop(self) -> None:
        if self._flush_task is not None:
            await self._flush_task.stop()
            self._flush_task = None

    @property
    def pending(self) -> int:
        with self._buffer_lock:
            return len(self._buffer)

    async def flush(self) -> int:
        """Write buffered events; returns how many reached the store.

        Whatever is not written goes back to the front of the buffer, whether
        the store is unavailable, rejects a chunk or the flush is cancelled.
        """
        async with self._flush_lock:
            with self._buffer_lock:
                batch, self._buffer = self._buffer, []
            written = 0
            try:
                while written < len(batch):
                    chunk = batch[written : written + self.chunk_size]
                    await run_bounded(
                        self.store.append_audit_events, chunk, timeout=self._timeout
                    )
                    written += len(chunk)
            except StoreUnavailableError as exc:
                logger.error(
                    "audit_flush_failed",
                    error=exc.message,
                    requeued=len(batch) - written,
                )
            finally:
                if written < len(batch):
                    with self._buffer_lock:
                        self._buffer = batch[written:] + self._buffer
            return written

    # -- logging -----------------------------------------------------------

    async def log(self, event: AuditEvent) -> AuditEvent:
        if event.details:
            event.details = redact_sensitive(event.details)
        logger.info("audit_event", **{k: v for k, v in asdict(event).items() if k != "timestamp"})
        if self.buffering:
            with self._buffer_lock:
                self._buffer.append(event)
                full = len(self._buffer) >= self.buffer_size
            if full:
                await self.flush()
            return event
        try:
            await run_bounded(self.store.append_audit_events, [event], timeout=self._timeout)
        except StoreUnavailableError as exc:
            logger.error("audit_write_failed", event_id=event.id, error=exc.message)
        return event

    def _build(
        self,
        category: AuditCategory,
        event_type: Union[AuthEventType, SecurityEventType],
        status: AuditStatus,
        severity: Severity,
        *,
        user_id: Optional[str] = None,
        username: Optional[str] = None,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        resource_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        action: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        return AuditEvent(
            id=str(uuid.uuid4()),
            category=_value(category),
            type=_value(event_type),
            status=_value(status),
            severity=_value(severity),
            timestamp=datetime.now(timezone.utc),
            user_id=str(user_id) if user_id is not None else None,
            username=username,
            session_id=session_id,
            ip_address=ip_address,
            user_agent=user_agent,
            resource_id=resource_id,
            resource_type=resource_type,
            action=action,
            details=details,
        )

    async def log_auth_event(
        self,
        event_type: AuthEventType,
        status: AuditStatus = AuditStatus.SUCCESS,
        **fields: Any,
    ) -> AuditEvent:
        event_type = AuthEventType(_value(event_type))
        status = AuditStatus(_value(status))
        event = self._build(
            AuditCategory.AUTHENTICATION,
            event_type,
            status,
            auth_event_severity(event_type, status),
            **fields,
        )
        return await self.log(event)

    async def log_security_event(
        self,
        event_type: SecurityEventType,
        status: AuditStatus = AuditStatus.WARNING,
        **fields: Any,
    ) -> AuditEvent:
        event_type = SecurityEventType(_value(event_type))
        event = self._build(
            AuditCategory.SECURITY,
            event_type,
            AuditStatus(_value(status)),
            security_event_severity(event_type),
            **fields,
        )
        return await self.log(event)

    # -- reads -------------------------------------------------------------

    async def query(
        self,
        criteria: Optional[AuditQuery] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> AuditQueryResult:
        events, total = await run_bounded(
            self.store.query_audit_events,
            criteria or AuditQuery(),
            limit,
            offset,
            timeout=self._timeout,
        )
        return AuditQueryResult(events=events, total=total)

    async def export(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> List[AuditEvent]:
        return await run_bounded(
            self.store.export_audit_events, start, end, timeout=self._timeout
        )

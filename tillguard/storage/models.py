from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps from older records as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: Optional[str] = None
    role: str = "staff"
    is_active: bool = True
    password_hash: Optional[str] = None
    pin_hash: Optional[str] = None
    is_pin_enabled: bool = False
    failed_pin_attempts: int = 0
    pin_locked_until: Optional[datetime] = None
    pin_last_failed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None


@dataclass
class PinLockState:
    """Durable PIN lockout counters for one user."""

    user_id: str
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_failed_at: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and ensure_aware(self.locked_until) > now

    def remaining_ms(self, now: datetime) -> int:
        if not self.is_locked(now):
            return 0
        return int((ensure_aware(self.locked_until) - now).total_seconds() * 1000)


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True

    @classmethod
    def new(
        cls,
        user_id: str,
        timeout_minutes: int,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=timeout_minutes),
            last_activity_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def is_live(self, now: datetime) -> bool:
        return self.is_active and ensure_aware(self.expires_at) > now


@dataclass
class RefreshToken:
    id: str
    token_hash: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None

    @classmethod
    def new(
        cls, user_id: str, token_hash: str, ttl: timedelta, *, now: datetime | None = None
    ) -> "RefreshToken":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token_hash=token_hash,
            user_id=user_id,
            created_at=now,
            expires_at=now + ttl,
        )

    def is_valid(self, now: datetime) -> bool:
        return not self.is_revoked and ensure_aware(self.expires_at) > now


@dataclass
class SessionActivity:
    id: str
    session_id: str
    user_id: str
    type: str
    created_at: datetime = field(default_factory=utcnow)
    details: Dict | None = None


@dataclass
class AuditEvent:
    id: str
    category: str
    type: str
    status: str
    severity: str
    timestamp: datetime = field(default_factory=utcnow)
    user_id: Optional[str] = None
    username: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    action: Optional[str] = None
    details: Dict | None = None


@dataclass
class AuditQuery:
    """Filter for audit queries; ``None`` fields match everything."""

    category: Optional[str] = None
    type: Optional[str] = None
    user_id: Optional[str] = None
    severity: Optional[str] = None
    status: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def matches(self, event: AuditEvent) -> bool:
        if self.category and event.category != self.category:
            return False
        if self.type and event.type != self.type:
            return False
        if self.user_id and event.user_id != self.user_id:
            return False
        if self.severity and event.severity != self.severity:
            return False
        if self.status and event.status != self.status:
            return False
        ts = ensure_aware(event.timestamp)
        if self.start and ts < ensure_aware(self.start):
            return False
        if self.end and ts > ensure_aware(self.end):
            return False
        return True

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from redis.exceptions import RedisError

from tillguard.config import Settings
from tillguard.logging import get_logger
from tillguard.service.audit import (
    AuditLogger,
    AuditStatus,
    AuthEventType,
    SecurityEventType,
)
from tillguard.service.bounded import run_bounded
from tillguard.service.brute_force import LoginRateLimiter, PinLockoutService
from tillguard.service.csrf import CsrfGuard
from tillguard.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    InsufficientPermissionsError,
    InvalidCredentialsError,
    NotFoundError,
    RateLimitedError,
    RefreshTokenInvalidError,
    ServiceError,
    SessionExpiredError,
    TokenBlacklistedError,
    TokenExpiredError,
    TokenInvalidError,
    TokenMissingError,
    ValidationError,
)
from tillguard.service.pin_security import (
    PinStrength,
    evaluate_pin_strength,
    validate_pin_complexity,
)
from tillguard.service.refresh_tokens import RefreshTokenService
from tillguard.service.sessions import SessionManager
from tillguard.service.tokens import TokenSigner
from tillguard.storage.models import Session, SessionActivity, User

logger = get_logger(__name__)

# Cleanup steps on logout are best effort
_CLEANUP_ERRORS = (ServiceError, RedisError, asyncio.TimeoutError, OSError)


class CredentialStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    session_id: Optional[str] = None
    claims: dict = field(default_factory=dict)


@dataclass
class LoginResult:
    user: User
    session: Session
    access_token: str
    refresh_token: str
    expires_in_seconds: int
    csrf_token: str


@dataclass
class TerminateOthersResult:
    count: int
    refresh_token: str


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AuthService:
    """Login, refresh, logout and session endpoints over the security components.

    Every failure leaves through the :mod:`tillguard.service.errors` taxonomy.
    Unknown users, wrong passwords and wrong PINs all surface as
    ``invalid_credentials``; the specific reason is written to the audit log
    only.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        signer: TokenSigner,
        refresh_tokens: RefreshTokenService,
        sessions: SessionManager,
        login_limiter: LoginRateLimiter,
        pin_lockout: PinLockoutService,
        csrf: CsrfGuard,
        audit: AuditLogger,
    ) -> None:
        self.store = store
        self.settings = settings
        self.signer = signer
        self.refresh_tokens = refresh_tokens
        self.sessions = sessions
        self.login_limiter = login_limiter
        self.pin_lockout = pin_lockout
        self.csrf = csrf
        self.audit = audit
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    async def _call(self, func, *args, **kwargs):
        return await run_bounded(
            func, *args, timeout=self.settings.store_timeout_seconds, **kwargs
        )

    # -- hashing -----------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def hash_pin(self, pin: str) -> str:
        return self._pwd_hasher.hash(pin)

    def verify_password(self, stored_hash: Optional[str], password: str) -> bool:
        if not stored_hash:
            # Keep the miss path as slow as a real comparison
            if self._dummy_hash is None:
                self._dummy_hash = self._pwd_hasher.hash("tillguard-dummy-secret")
            stored_hash = self._dummy_hash
            password = f"!{password}"
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    # -- login -------------------------------------------------------------

    async def _start_session(
        self, user: User, *, ip_address: Optional[str], user_agent: Optional[str]
    ) -> LoginResult:
        session = await self.sessions.create(
            user.id, ip_address=ip_address, user_agent=user_agent
        )
        access = self.signer.issue(user, session_id=session.id)
        refresh_token = await self.refresh_tokens.generate(user.id)
        csrf_token = await self.csrf.issue(session.id)
        return LoginResult(
            user=user,
            session=session,
            access_token=access.token,
            refresh_token=refresh_token,
            expires_in_seconds=access.expires_in_seconds,
            csrf_token=csrf_token,
        )

    async def login(
        self,
        identity: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        identity = (identity or "").strip()
        request_meta = {"ip_address": ip_address, "user_agent": user_agent}
        key = self.login_limiter.key_for(identity, ip_address)
        try:
            attempt = await self.login_limiter.acquire(key)
        except RateLimitedError as exc:
            await self.audit.log_auth_event(
                AuthEventType.RATE_LIMIT_EXCEEDED,
                AuditStatus.FAILURE,
                username=identity,
                details={"retry_after_minutes": exc.retry_after_minutes},
                **request_meta,
            )
            raise

        user = await self._call(self.store.get_user_by_username, identity) if identity else None
        if user is None:
            self.verify_password(None, password or "")
            await self._login_failed(key, attempt, identity, None, "USER_NOT_FOUND", request_meta)
            raise InvalidCredentialsError()
        if not user.is_active:
            await self.login_limiter.record_failure(key, attempt)
            await self.audit.log_auth_event(
                AuthEventType.LOGIN_FAILURE,
                AuditStatus.FAILURE,
                user_id=user.id,
                username=user.username,
                details={"reason": "ACCOUNT_DISABLED"},
                **request_meta,
            )
            raise AccountDisabledError()
        if not self.verify_password(user.password_hash, password or ""):
            await self._login_failed(key, attempt, identity, user.id, "INVALID_PASSWORD", request_meta)
            raise InvalidCredentialsError()

        await self.login_limiter.reset(key)
        result = await self._start_session(user, **request_meta)
        await self.audit.log_auth_event(
            AuthEventType.LOGIN_SUCCESS,
            AuditStatus.SUCCESS,
            user_id=user.id,
            username=user.username,
            session_id=result.session.id,
            **request_meta,
        )
        logger.info("login_success", user_id=user.id, session_id=result.session.id)
        return result

    async def _login_failed(
        self,
        key: str,
        attempt: int,
        identity: str,
        user_id: Optional[str],
        reason: str,
        request_meta: dict,
    ) -> None:
        attempts = await self.login_limiter.record_failure(key, attempt)
        await self.audit.log_auth_event(
            AuthEventType.LOGIN_FAILURE,
            AuditStatus.FAILURE,
            user_id=user_id,
            username=identity,
            details={"reason": reason, "attempts": attempts},
            **request_meta,
        )
        if attempts >= self.login_limiter.max_attempts:
            await self.audit.log_security_event(
                SecurityEventType.BRUTE_FORCE_ATTEMPT,
                AuditStatus.WARNING,
                user_id=user_id,
                username=identity,
                details={"mechanism": "password", "attempts": attempts},
                **request_meta,
            )

    async def login_with_pin(
        self,
        user_id: str,
        pin: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        user_id = str(user_id)
        request_meta = {"ip_address": ip_address, "user_agent": user_agent}

        async def _failed(reason: str, user: Optional[User] = None, **extra: Any) -> None:
            await self.audit.log_auth_event(
                AuthEventType.PIN_LOGIN_FAILURE,
                AuditStatus.FAILURE,
                user_id=user_id,
                username=user.username if user else None,
                details={"reason": reason, **extra},
                **request_meta,
            )

        user = await self._call(self.store.get_user, user_id)
        if user is None:
            self.verify_password(None, pin or "")
            await _failed("USER_NOT_FOUND")
            raise InvalidCredentialsError()
        if not user.is_pin_enabled or not user.pin_hash:
            self.verify_password(None, pin or "")
            await _failed("PIN_NOT_ENABLED", user)
            raise InvalidCredentialsError()

        attempt = await self.pin_lockout.reserve_attempt(user.id)
        if not attempt.granted:
            status = attempt.status
            minutes = max(1, math.ceil(status.remaining_ms / 60000))
            logger.warning("pin_login_while_locked", user_id=user.id, minutes=minutes)
            await _failed("PIN_LOCKED", user, remaining_ms=status.remaining_ms)
            raise AccountLockedError(
                f"PIN login locked due to too many failed attempts. Try again in {minutes} minutes.",
                remaining_ms=status.remaining_ms,
            )

        if not self.verify_password(user.pin_hash, pin or ""):
            status = self.pin_lockout.settle_failure(user.id, attempt)
            await _failed("INVALID_PIN", user, attempts=status.attempts)
            if status.is_locked:
                minutes = max(1, math.ceil(status.remaining_ms / 60000))
                for event_type in (
                    SecurityEventType.ACCOUNT_LOCKED,
                    SecurityEventType.BRUTE_FORCE_ATTEMPT,
                ):
                    await self.audit.log_security_event(
                        event_type,
                        AuditStatus.WARNING,
                        user_id=user.id,
                        username=user.username,
                        details={"mechanism": "pin", "attempts": status.attempts},
                        **request_meta,
                    )
                raise AccountLockedError(
                    f"Invalid PIN. Account locked for {minutes} minutes due to too many failed attempts.",
                    remaining_ms=status.remaining_ms,
                )
            raise InvalidCredentialsError()

        had_lockout = attempt.prior_attempts >= self.pin_lockout.max_attempts
        await self.pin_lockout.release(user.id, attempt)
        if had_lockout:
            await self.audit.log_security_event(
                SecurityEventType.ACCOUNT_UNLOCKED,
                AuditStatus.SUCCESS,
                user_id=user.id,
                username=user.username,
                **request_meta,
            )
        if not user.is_active:
            await _failed("ACCOUNT_DISABLED", user)
            raise AccountDisabledError()

        result = await self._start_session(user, **request_meta)
        await self.audit.log_auth_event(
            AuthEventType.PIN_LOGIN_SUCCESS,
            AuditStatus.SUCCESS,
            user_id=user.id,
            username=user.username,
            session_id=result.session.id,
            **request_meta,
        )
        logger.info("pin_login_success", user_id=user.id, session_id=result.session.id)
        return result

    # -- refresh -----------------------------------------------------------

    async def refresh(
        self,
        refresh_token: Optional[str],
        session_id: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        request_meta = {"ip_address": ip_address, "user_agent": user_agent}

        async def _failed(reason: str, user_id: Optional[str] = None) -> None:
            await self.audit.log_auth_event(
                AuthEventType.TOKEN_REFRESH,
                AuditStatus.FAILURE,
                user_id=user_id,
                session_id=session_id,
                details={"reason": reason},
                **request_meta,
            )

        if not refresh_token:
            await _failed("MISSING")
            raise RefreshTokenInvalidError()
        record = await self.refresh_tokens.inspect(refresh_token)
        if record is None:
            await _failed("UNKNOWN")
            raise RefreshTokenInvalidError()
        if record.is_revoked:
            await self.audit.log_security_event(
                SecurityEventType.REFRESH_TOKEN_REUSE,
                AuditStatus.FAILURE,
                user_id=record.user_id,
                session_id=session_id,
                details={"replaced_by_present": record.replaced_by is not None},
                **request_meta,
            )
            if self.settings.refresh_reuse_revokes_family:
                await self.refresh_tokens.revoke_all(record.user_id)
                await self.sessions.terminate_all_except(record.user_id, None, reason="TOKEN_REUSE")
            raise RefreshTokenInvalidError()
        if not record.is_valid(_now()):
            await _failed("EXPIRED", record.user_id)
            raise RefreshTokenInvalidError()

        user = await self._call(self.store.get_user, record.user_id)
        if user is None:
            await _failed("USER_MISSING", record.user_id)
            raise RefreshTokenInvalidError()
        if not user.is_active:
            await self.refresh_tokens.revoke(refresh_token)
            await _failed("ACCOUNT_DISABLED", user.id)
            raise AccountDisabledError()

        session: Optional[Session] = None
        if session_id:
            session = await self.sessions.get(session_id)
            if session is None or session.user_id != user.id or not await self.sessions.validate(session_id):
                await _failed("SESSION_EXPIRED", user.id)
                raise SessionExpiredError()

        new_refresh = await self.refresh_tokens.rotate(refresh_token)
        if new_refresh is None:
            await _failed("ROTATION_FAILED", user.id)
            raise RefreshTokenInvalidError()

        if session is None:
            session = await self.sessions.create(user.id, **request_meta)
        access = self.signer.issue(user, session_id=session.id)
        csrf_token = await self.csrf.issue(session.id)
        await self.audit.log_auth_event(
            AuthEventType.TOKEN_REFRESH,
            AuditStatus.SUCCESS,
            user_id=user.id,
            username=user.username,
            session_id=session.id,
            **request_meta,
        )
        return LoginResult(
            user=user,
            session=session,
            access_token=access.token,
            refresh_token=new_refresh,
            expires_in_seconds=access.expires_in_seconds,
            csrf_token=csrf_token,
        )

    # -- logout ------------------------------------------------------------

    async def logout(
        self,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        session_id: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Tear down whatever credentials were presented. Never raises."""
        user_id: Optional[str] = None
        if refresh_token:
            try:
                record = await self.refresh_tokens.inspect(refresh_token)
                user_id = record.user_id if record else None
                await self.refresh_tokens.revoke(refresh_token)
            except _CLEANUP_ERRORS as exc:
                logger.warning("logout_refresh_revoke_failed", error=str(exc))
        if access_token:
            try:
                ttl = self.signer.remaining_ttl(access_token)
                claims = self.signer.signed_claims(access_token)
                user_id = user_id or claims.get("sub")
                session_id = session_id or claims.get("sid")
                await self.signer.blacklist(access_token, ttl)
            except TokenInvalidError:
                logger.info("logout_access_token_unsigned")
            except _CLEANUP_ERRORS as exc:
                logger.warning("logout_blacklist_failed", error=str(exc))
        if session_id:
            try:
                await self.sessions.terminate(session_id, reason="USER_LOGOUT")
            except _CLEANUP_ERRORS as exc:
                logger.warning("logout_session_terminate_failed", error=str(exc))
            try:
                await self.csrf.revoke(session_id)
            except _CLEANUP_ERRORS as exc:
                logger.warning("logout_csrf_revoke_failed", error=str(exc))
        await self.audit.log_auth_event(
            AuthEventType.LOGOUT,
            AuditStatus.SUCCESS,
            user_id=user_id,
            session_id=session_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    # -- verification ------------------------------------------------------

    async def verify(
        self,
        access_token: Optional[str],
        session_id: Optional[str] = None,
        *,
        audit: bool = True,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthContext:
        if not access_token:
            raise TokenMissingError()
        request_meta = {"ip_address": ip_address, "user_agent": user_agent}
        try:
            claims = await self.signer.verify(access_token)
        except TokenBlacklistedError:
            await self.audit.log_security_event(
                SecurityEventType.TOKEN_BLACKLISTED,
                AuditStatus.FAILURE,
                session_id=session_id,
                **request_meta,
            )
            raise
        except (TokenInvalidError, TokenExpiredError) as exc:
            if audit:
                await self.audit.log_auth_event(
                    AuthEventType.TOKEN_VALIDATION,
                    AuditStatus.FAILURE,
                    session_id=session_id,
                    details={"reason": exc.error_code},
                    **request_meta,
                )
            raise
        sid = claims.get("sid") or session_id
        if sid and not await self.sessions.validate(sid):
            if audit:
                await self.audit.log_auth_event(
                    AuthEventType.SESSION_EXPIRED,
                    AuditStatus.FAILURE,
                    user_id=claims.get("sub"),
                    session_id=sid,
                    **request_meta,
                )
            raise SessionExpiredError()
        ctx = AuthContext(
            user_id=str(claims["sub"]),
            role=claims.get("role", "staff"),
            session_id=sid,
            claims=claims,
        )
        if audit:
            await self.audit.log_auth_event(
                AuthEventType.TOKEN_VALIDATION,
                AuditStatus.SUCCESS,
                user_id=ctx.user_id,
                session_id=sid,
                **request_meta,
            )
        return ctx

    async def authenticate(
        self,
        authorization: Optional[str],
        access_cookie: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> AuthContext:
        token = None
        if authorization:
            scheme, _, credentials = authorization.partition(" ")
            if scheme.lower() != "bearer" or not credentials.strip():
                raise TokenInvalidError()
            token = credentials.strip()
        token = token or access_cookie
        return await self.verify(token, session_id, audit=False)

    async def require_role(self, ctx: AuthContext, role: str, *, resource: str) -> None:
        if ctx.role == role:
            return
        await self.audit.log_security_event(
            SecurityEventType.PERMISSION_DENIED,
            AuditStatus.FAILURE,
            user_id=ctx.user_id,
            session_id=ctx.session_id,
            resource_type=resource,
            details={"required_role": role},
        )
        raise InsufficientPermissionsError()

    # -- sessions ----------------------------------------------------------

    async def list_sessions(self, ctx: AuthContext) -> List[dict]:
        sessions = await self.sessions.list_active(ctx.user_id)
        return [
            {
                "id": s.id,
                "created_at": s.created_at,
                "last_activity_at": s.last_activity_at,
                "expires_at": s.expires_at,
                "ip_address": s.ip_address,
                "user_agent": s.user_agent,
                "current": s.id == ctx.session_id,
            }
            for s in sessions
        ]

    async def _owned_session(self, ctx: AuthContext, session_id: str) -> Session:
        session = await self.sessions.get(session_id)
        if session is None:
            raise NotFoundError("Session not found")
        if session.user_id != ctx.user_id:
            await self.audit.log_security_event(
                SecurityEventType.PERMISSION_DENIED,
                AuditStatus.FAILURE,
                user_id=ctx.user_id,
                session_id=ctx.session_id,
                resource_id=session_id,
                resource_type="session",
            )
            raise InsufficientPermissionsError()
        return session

    async def terminate_session(self, ctx: AuthContext, session_id: str) -> bool:
        await self._owned_session(ctx, session_id)
        ended = await self.sessions.terminate(session_id, reason="TERMINATED_BY_USER")
        await self.csrf.revoke(session_id)
        await self.audit.log_auth_event(
            AuthEventType.SESSION_TERMINATED,
            AuditStatus.SUCCESS,
            user_id=ctx.user_id,
            session_id=ctx.session_id,
            resource_id=session_id,
            resource_type="session",
        )
        return ended

    async def terminate_other_sessions(self, ctx: AuthContext) -> TerminateOthersResult:
        count = await self.sessions.terminate_all_except(ctx.user_id, ctx.session_id)
        await self.refresh_tokens.revoke_all(ctx.user_id)
        refresh_token = await self.refresh_tokens.generate(ctx.user_id)
        await self.audit.log_auth_event(
            AuthEventType.SESSION_TERMINATED,
            AuditStatus.SUCCESS,
            user_id=ctx.user_id,
            session_id=ctx.session_id,
            details={"scope": "others", "count": count},
        )
        return TerminateOthersResult(count=count, refresh_token=refresh_token)

    async def list_activity(
        self, ctx: AuthContext, session_id: str, limit: int = 50
    ) -> List[SessionActivity]:
        await self._owned_session(ctx, session_id)
        return await self.sessions.list_activity(session_id, limit)

    # -- PIN management ----------------------------------------------------

    async def set_pin(self, ctx: AuthContext, pin: str) -> PinStrength:
        ok, reason = validate_pin_complexity(pin)
        if not ok:
            raise ValidationError(reason, detail={"field": "pin"})
        updated = await self._call(
            self.store.update_user, ctx.user_id, pin_hash=self.hash_pin(pin), is_pin_enabled=True
        )
        if updated is None:
            raise NotFoundError("User not found")
        await self.pin_lockout.reset(ctx.user_id)
        await self.audit.log_auth_event(
            AuthEventType.PIN_CHANGED,
            AuditStatus.SUCCESS,
            user_id=ctx.user_id,
            username=updated.username,
            session_id=ctx.session_id,
        )
        return evaluate_pin_strength(pin)

"""Unit tests for the auth orchestrator over in-memory components."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from tillguard.service.audit import AuditLogger
from tillguard.service.auth import AuthService
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
    SessionExpiredError,
    TokenBlacklistedError,
    TokenMissingError,
    ValidationError,
)
from tillguard.service.pin_security import PinStrength
from tillguard.service.refresh_tokens import RefreshTokenService
from tillguard.service.sessions import SessionManager
from tillguard.service.tokens import TokenSigner
from tillguard.storage.models import AuditQuery


def _build(store, settings, kv):
    return AuthService(
        store,
        settings,
        signer=TokenSigner(settings, kv),
        refresh_tokens=RefreshTokenService(store, settings),
        sessions=SessionManager(store, settings),
        login_limiter=LoginRateLimiter(kv, max_attempts=5, lockout_minutes=15),
        pin_lockout=PinLockoutService(store, settings),
        csrf=CsrfGuard(kv, secret=settings.effective_csrf_secret),
        audit=AuditLogger(store),
    )


@pytest.fixture
def auth(store, settings, kv):
    return _build(store, settings, kv)


@pytest.fixture
def alice(store, auth):
    return store.create_user("alice", password_hash=auth.hash_password("correct"))


@pytest.fixture
def cashier(store, auth):
    return store.create_user(
        "cashier", user_id="42", password_hash=auth.hash_password("pw"), pin_hash=auth.hash_pin("4821")
    )


def _types(store):
    return [e.type for e in store.audit_events]


def _count_comparisons(auth, stored_hash, monkeypatch):
    """Record each secret compared against ``stored_hash``."""
    compared = []
    verify = auth.verify_password

    def counting(hashed, secret):
        if hashed == stored_hash:
            compared.append(secret)
        return verify(hashed, secret)

    monkeypatch.setattr(auth, "verify_password", counting)
    return compared


class TestPasswordHashing:
    def test_argon2id(self, auth):
        hashed = auth.hash_password("correct")
        assert hashed.startswith("$argon2id$")
        assert auth.verify_password(hashed, "correct")
        assert not auth.verify_password(hashed, "wrong")
        assert not auth.verify_password("not-a-hash", "correct")
        assert not auth.verify_password(None, "correct")


class TestPasswordLogin:
    async def test_success_issues_everything(self, auth, alice, store):
        result = await auth.login("alice", "correct", ip_address="10.0.0.1")

        assert result.user.id == alice.id
        assert await auth.sessions.validate(result.session.id)
        claims = await auth.signer.verify(result.access_token)
        assert claims["sid"] == result.session.id
        assert await auth.refresh_tokens.validate(result.refresh_token) == alice.id
        assert "LOGIN_SUCCESS" in _types(store)

    async def test_unknown_user_and_wrong_password_look_identical(self, auth, alice, store):
        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth.login("mallory", "correct")
        with pytest.raises(InvalidCredentialsError) as wrong:
            await auth.login("alice", "nope")

        assert unknown.value.message == wrong.value.message
        reasons = [e.details["reason"] for e in store.audit_events if e.type == "LOGIN_FAILURE"]
        assert reasons == ["USER_NOT_FOUND", "INVALID_PASSWORD"]

    async def test_disabled_account(self, auth, alice, store):
        store.update_user(alice.id, is_active=False)
        with pytest.raises(AccountDisabledError):
            await auth.login("alice", "correct")

    async def test_sixth_attempt_rate_limited_even_if_correct(self, auth, alice, store):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth.login("alice", "wrong", ip_address="10.0.0.9")

        with pytest.raises(RateLimitedError) as exc_info:
            await auth.login("alice", "correct", ip_address="10.0.0.9")
        assert exc_info.value.retry_after_minutes == 15
        assert "RATE_LIMIT_EXCEEDED" in _types(store)
        assert "BRUTE_FORCE_ATTEMPT" in _types(store)

        # Another address is unaffected
        await auth.login("alice", "correct", ip_address="10.0.0.10")

    async def test_success_resets_counter(self, auth, alice):
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await auth.login("alice", "wrong")
        await auth.login("alice", "correct")
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await auth.login("alice", "wrong")
        await auth.login("alice", "correct")

    async def test_concurrent_wrong_passwords_stop_at_threshold(self, auth, alice, monkeypatch):
        compared = _count_comparisons(auth, alice.password_hash, monkeypatch)

        results = await asyncio.gather(
            *(auth.login("alice", f"guess-{i}", ip_address="10.0.0.5") for i in range(20)),
            return_exceptions=True,
        )

        assert len(compared) <= auth.login_limiter.max_attempts
        assert sum(isinstance(r, InvalidCredentialsError) for r in results) == len(compared)
        assert all(isinstance(r, (InvalidCredentialsError, RateLimitedError)) for r in results)
        with pytest.raises(RateLimitedError):
            await auth.login("alice", "correct", ip_address="10.0.0.5")


class TestPinLogin:
    async def test_success(self, auth, cashier, store):
        result = await auth.login_with_pin(42, "4821")
        assert result.user.id == "42"
        assert "PIN_LOGIN_SUCCESS" in _types(store)

    async def test_pin_not_enabled_is_invalid_credentials(self, auth, alice):
        with pytest.raises(InvalidCredentialsError):
            await auth.login_with_pin(alice.id, "4821")

    async def test_lockout_sequence(self, auth, cashier, store):
        for _ in range(auth.pin_lockout.max_attempts - 1):
            with pytest.raises(InvalidCredentialsError):
                await auth.login_with_pin("42", "0000")

        with pytest.raises(AccountLockedError) as locking:
            await auth.login_with_pin("42", "0000")
        assert locking.value.message.startswith("Invalid PIN. Account locked for 30 minutes")
        assert {"ACCOUNT_LOCKED", "BRUTE_FORCE_ATTEMPT"} <= set(_types(store))

        with pytest.raises(AccountLockedError) as locked:
            await auth.login_with_pin("42", "4821")
        assert locked.value.message.startswith("PIN login locked due to too many failed attempts")
        assert locked.value.detail["remaining_ms"] > 0

    async def test_success_after_lock_expiry_audits_unlock(self, auth, cashier, store):
        for _ in range(auth.pin_lockout.max_attempts):
            with pytest.raises((InvalidCredentialsError, AccountLockedError)):
                await auth.login_with_pin("42", "0000")

        later = datetime.now(timezone.utc) + timedelta(minutes=31)
        with patch("tillguard.service.brute_force._now", return_value=later):
            await auth.login_with_pin("42", "4821")

        assert "ACCOUNT_UNLOCKED" in _types(store)
        assert store.get_pin_lock_state("42").failed_attempts == 0

    async def test_concurrent_wrong_pins_stop_at_threshold(self, auth, cashier, store, monkeypatch):
        compared = _count_comparisons(auth, cashier.pin_hash, monkeypatch)

        results = await asyncio.gather(
            *(auth.login_with_pin("42", f"{i:04d}") for i in range(30)), return_exceptions=True
        )

        max_attempts = auth.pin_lockout.max_attempts
        assert len(compared) == max_attempts
        assert all(isinstance(r, (InvalidCredentialsError, AccountLockedError)) for r in results)
        assert sum(isinstance(r, InvalidCredentialsError) for r in results) == max_attempts - 1
        state = store.get_pin_lock_state("42")
        assert state.failed_attempts == max_attempts
        assert state.is_locked(datetime.now(timezone.utc))

    async def test_correct_pin_clears_earlier_failures(self, auth, cashier, store):
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await auth.login_with_pin("42", "0000")

        await auth.login_with_pin("42", "4821")

        assert store.get_pin_lock_state("42").failed_attempts == 0
        assert "ACCOUNT_UNLOCKED" not in _types(store)

    async def test_disabled_account_after_correct_pin(self, auth, cashier, store):
        store.update_user("42", is_active=False)
        with pytest.raises(AccountDisabledError):
            await auth.login_with_pin("42", "4821")


class TestRefresh:
    async def test_rotates_and_keeps_session(self, auth, alice, store):
        first = await auth.login("alice", "correct")
        second = await auth.refresh(first.refresh_token, first.session.id)

        assert second.session.id == first.session.id
        assert second.refresh_token != first.refresh_token
        assert "TOKEN_REFRESH" in _types(store)

    async def test_without_session_creates_one(self, auth, alice):
        first = await auth.login("alice", "correct")
        second = await auth.refresh(first.refresh_token)
        assert second.session.id != first.session.id

    async def test_reused_token_is_rejected_and_audited(self, auth, alice, store):
        first = await auth.login("alice", "correct")
        await auth.refresh(first.refresh_token, first.session.id)

        with pytest.raises(RefreshTokenInvalidError):
            await auth.refresh(first.refresh_token, first.session.id)
        reuse = [e for e in store.audit_events if e.type == "REFRESH_TOKEN_REUSE"]
        assert reuse and reuse[0].severity == "ERROR"

    async def test_reuse_can_revoke_family(self, store, settings, kv, auth):
        hardened = _build(store, settings.model_copy(update={"refresh_reuse_revokes_family": True}), kv)
        store.create_user("bob", password_hash=auth.hash_password("pw"))
        first = await hardened.login("bob", "pw")
        second = await hardened.refresh(first.refresh_token, first.session.id)

        with pytest.raises(RefreshTokenInvalidError):
            await hardened.refresh(first.refresh_token)
        assert await hardened.refresh_tokens.validate(second.refresh_token) is None
        assert not await hardened.sessions.validate(first.session.id)

    async def test_expired_session_cookie(self, auth, alice):
        first = await auth.login("alice", "correct")
        await auth.sessions.terminate(first.session.id)
        with pytest.raises(SessionExpiredError):
            await auth.refresh(first.refresh_token, first.session.id)

    async def test_missing_token(self, auth):
        with pytest.raises(RefreshTokenInvalidError):
            await auth.refresh(None)


class TestLogoutAndVerify:
    async def test_logout_tears_everything_down(self, auth, alice):
        result = await auth.login("alice", "correct")
        await auth.logout(result.access_token, result.refresh_token, result.session.id)

        with pytest.raises(TokenBlacklistedError):
            await auth.verify(result.access_token)
        assert await auth.refresh_tokens.validate(result.refresh_token) is None
        assert not await auth.sessions.validate(result.session.id)

    async def test_logout_is_idempotent(self, auth, alice, store):
        result = await auth.login("alice", "correct")
        await auth.logout(result.access_token, result.refresh_token, result.session.id)
        await auth.logout(result.access_token, result.refresh_token, result.session.id)
        await auth.logout(None, None, None)
        await auth.logout("garbage", "garbage", "garbage")
        assert _types(store).count("LOGOUT") == 4

    async def test_verify_requires_live_session(self, auth, alice):
        result = await auth.login("alice", "correct")
        ctx = await auth.verify(result.access_token)
        assert ctx.user_id == alice.id and ctx.session_id == result.session.id

        await auth.sessions.terminate(result.session.id)
        with pytest.raises(SessionExpiredError):
            await auth.verify(result.access_token)

    async def test_verify_without_token(self, auth):
        with pytest.raises(TokenMissingError):
            await auth.verify(None)

    async def test_authenticate_prefers_bearer(self, auth, alice):
        result = await auth.login("alice", "correct")
        ctx = await auth.authenticate(f"Bearer {result.access_token}", None)
        assert ctx.user_id == alice.id
        ctx = await auth.authenticate(None, result.access_token)
        assert ctx.user_id == alice.id


class TestSessionEndpoints:
    async def test_terminate_other_sessions(self, auth, alice):
        logins = [await auth.login("alice", "correct") for _ in range(3)]
        current = logins[0]
        ctx = await auth.verify(current.access_token)

        outcome = await auth.terminate_other_sessions(ctx)

        assert outcome.count == 2
        assert await auth.sessions.validate(current.session.id)
        assert await auth.refresh_tokens.validate(outcome.refresh_token) == alice.id
        assert await auth.refresh_tokens.validate(current.refresh_token) is None
        listed = await auth.list_sessions(ctx)
        assert [s["current"] for s in listed] == [True]

    async def test_cannot_terminate_foreign_session(self, auth, alice, store):
        store.create_user("bob", password_hash=auth.hash_password("pw"))
        mine = await auth.login("alice", "correct")
        theirs = await auth.login("bob", "pw")
        ctx = await auth.verify(mine.access_token)

        with pytest.raises(InsufficientPermissionsError):
            await auth.terminate_session(ctx, theirs.session.id)
        with pytest.raises(NotFoundError):
            await auth.terminate_session(ctx, "missing")
        assert await auth.terminate_session(ctx, mine.session.id) is True

    async def test_require_role(self, auth, alice, store):
        ctx = await auth.verify((await auth.login("alice", "correct")).access_token)
        with pytest.raises(InsufficientPermissionsError):
            await auth.require_role(ctx, "admin", resource="audit")
        denied = (await auth.audit.query(AuditQuery(type="PERMISSION_DENIED"))).events
        assert denied[0].resource_type == "audit"


class TestSetPin:
    async def test_set_pin_enables_pin_login(self, auth, alice, store):
        ctx = await auth.verify((await auth.login("alice", "correct")).access_token)
        assert await auth.set_pin(ctx, "4821") is PinStrength.STRONG
        assert store.get_user(alice.id).is_pin_enabled
        assert "PIN_CHANGED" in _types(store)
        await auth.login_with_pin(alice.id, "4821")

    async def test_weak_pin_rejected(self, auth, alice):
        ctx = await auth.verify((await auth.login("alice", "correct")).access_token)
        with pytest.raises(ValidationError) as exc_info:
            await auth.set_pin(ctx, "1234")
        assert exc_info.value.detail == {"field": "pin"}

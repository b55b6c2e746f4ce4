"""Tests for session-bound double-submit CSRF tokens."""

import asyncio

import pytest

from tillguard.service.csrf import CsrfGuard
from tillguard.service.errors import CsrfExpiredError, CsrfMismatchError, CsrfMissingError


@pytest.fixture
def guard(kv):
    return CsrfGuard(kv, secret="csrf-test-secret", ttl_minutes=60)


class TestCsrfGuard:
    async def test_token_is_bound_to_session(self, guard):
        token = await guard.issue("sess-a")
        assert guard.is_bound_to(token, "sess-a")
        assert not guard.is_bound_to(token, "sess-b")
        assert not guard.is_bound_to("no-dot", "sess-a")

    async def test_valid_token_rotates(self, guard):
        token = await guard.issue("sess-a")
        replacement = await guard.validate("sess-a", token)

        assert replacement != token
        assert guard.is_bound_to(replacement, "sess-a")
        with pytest.raises(CsrfMismatchError):
            await guard.validate("sess-a", token)
        assert await guard.validate("sess-a", replacement)

    async def test_missing_token(self, guard):
        await guard.issue("sess-a")
        with pytest.raises(CsrfMissingError):
            await guard.validate("sess-a", None)
        with pytest.raises(CsrfMissingError):
            await guard.validate(None, "whatever")

    async def test_token_from_other_session_mismatches(self, guard):
        await guard.issue("sess-a")
        foreign = await guard.issue("sess-b")
        with pytest.raises(CsrfMismatchError):
            await guard.validate("sess-a", foreign)

    async def test_non_ascii_token_mismatches(self, guard):
        token = await guard.issue("sess-a")
        nonce, _, mac = token.partition(".")
        assert not guard.is_bound_to(f"{nonce}.\u00e9{mac[1:]}", "sess-a")

        with pytest.raises(CsrfMismatchError):
            await guard.validate("sess-a", f"{nonce}.\u00e9{mac[1:]}")
        with pytest.raises(CsrfMismatchError):
            await guard.validate("sess-a", "\u00fcber")
        assert await guard.validate("sess-a", token)

    async def test_no_stored_token_is_expired(self, guard):
        token = guard._new_token("sess-a")
        with pytest.raises(CsrfExpiredError):
            await guard.validate("sess-a", token)

    async def test_revoke(self, guard):
        token = await guard.issue("sess-a")
        await guard.revoke("sess-a")
        with pytest.raises(CsrfExpiredError):
            await guard.validate("sess-a", token)

    async def test_concurrent_use_accepts_once(self, guard):
        token = await guard.issue("sess-a")
        results = await asyncio.gather(
            *(guard.validate("sess-a", token) for _ in range(5)), return_exceptions=True
        )
        accepted = [r for r in results if isinstance(r, str)]
        assert len(accepted) == 1
        assert all(isinstance(r, CsrfMismatchError) for r in results if not isinstance(r, str))

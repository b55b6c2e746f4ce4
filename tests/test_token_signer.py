"""Tests for access-token signing, verification and the blacklist."""

import base64
import json
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from tillguard.service.errors import (
    TokenBlacklistedError,
    TokenExpiredError,
    TokenInvalidError,
)
from tillguard.service.tokens import BLACKLIST_PREFIX, TokenSigner, token_fingerprint
from tillguard.storage.models import User


@pytest.fixture
def signer(settings, kv):
    return TokenSigner(settings, kv)


@pytest.fixture
def user():
    return User(id="42", username="alice", role="manager")


def _later(minutes):
    moment = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    return patch("tillguard.service.tokens._now", return_value=moment)


class TestIssueAndVerify:
    async def test_round_trip_claims(self, signer, user):
        issued = signer.issue(user, session_id="sess-1")
        claims = await signer.verify(issued.token)

        assert claims["sub"] == "42"
        assert claims["role"] == "manager"
        assert claims["sid"] == "sess-1"
        assert claims["token_type"] == "access"
        assert issued.expires_in_seconds == signer.settings.access_token_ttl_minutes * 60

    async def test_tampered_signature_is_invalid(self, signer, user):
        token = signer.issue(user).token
        head, payload, sig = token.split(".")
        forged = f"{head}.{payload}.{sig[:-2]}xx"

        with pytest.raises(TokenInvalidError):
            await signer.verify(forged)

    async def test_other_secret_is_invalid(self, signer, user, settings, kv):
        other = TokenSigner(settings.model_copy(update={"jwt_secret": "x" * 48}), kv)
        token = other.issue(user).token

        with pytest.raises(TokenInvalidError):
            await signer.verify(token)

    async def test_none_algorithm_rejected(self, signer, user):
        token = signer.issue(user).token
        _, payload, sig = token.split(".")
        header = base64.urlsafe_b64encode(json.dumps({"alg": "none"}).encode()).decode().rstrip("=")

        with pytest.raises(TokenInvalidError):
            await signer.verify(f"{header}.{payload}.{sig}")

    async def test_garbage_is_invalid(self, signer):
        for token in ("", "abc", "a.b", "a.b.c.d"):
            with pytest.raises(TokenInvalidError):
                await signer.verify(token)

    async def test_non_ascii_signature_is_invalid(self, signer, user):
        head, payload, _ = signer.issue(user).token.split(".")

        with pytest.raises(TokenInvalidError):
            await signer.verify(f"{head}.{payload}.s\u00efgn\u00e9")
        with pytest.raises(TokenInvalidError):
            signer.remaining_ttl(f"{head}.{payload}.\u00e9")

    async def test_expired_token(self, signer, user):
        token = signer.issue(user).token
        with _later(signer.settings.access_token_ttl_minutes + 5):
            with pytest.raises(TokenExpiredError):
                await signer.verify(token)

    async def test_expiry_leeway(self, signer, user):
        token = signer.issue(user).token
        # Past exp by less than the skew allowance
        moment = datetime.now(timezone.utc) + timedelta(
            minutes=signer.settings.access_token_ttl_minutes, seconds=10
        )
        with patch("tillguard.service.tokens._now", return_value=moment):
            claims = await signer.verify(token)
        assert claims["sub"] == "42"


class TestBlacklist:
    async def test_blacklisted_token_rejected(self, signer, user, kv):
        token = signer.issue(user).token
        await signer.blacklist(token, signer.remaining_ttl(token))

        assert await kv.get(BLACKLIST_PREFIX + token_fingerprint(token)) == "1"
        with pytest.raises(TokenBlacklistedError):
            await signer.verify(token)

    async def test_blacklist_checked_before_expiry(self, signer, user):
        token = signer.issue(user).token
        await signer.blacklist(token, 60)

        with _later(signer.settings.access_token_ttl_minutes + 5):
            with pytest.raises(TokenBlacklistedError):
                await signer.verify(token)

    async def test_blacklist_lookup_failure_rejects(self, signer, user):
        token = signer.issue(user).token

        async def _broken(key):
            raise OSError("connection reset")

        signer.kv.get = _broken
        with pytest.raises(TokenInvalidError):
            await signer.verify(token)

    async def test_sweep_removes_expired_entries(self, signer, kv):
        await kv.set(BLACKLIST_PREFIX + "stale", "1", 1)
        await kv.set(BLACKLIST_PREFIX + "fresh", "1", 3600)

        later = time.monotonic() + 120
        with patch("tillguard.storage.kv.MemoryKV._clock", return_value=later):
            removed = await signer.sweep_blacklist()
            assert await kv.get(BLACKLIST_PREFIX + "fresh") == "1"

        assert removed == 1
        assert len(kv) == 1

    def test_remaining_ttl_never_negative(self, signer, user):
        token = signer.issue(user).token
        with _later(signer.settings.access_token_ttl_minutes + 1):
            assert signer.remaining_ttl(token) == 0

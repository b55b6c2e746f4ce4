"""Tests for opaque refresh tokens and single-use rotation."""

import asyncio
from datetime import timedelta

import pytest

from tillguard.service.refresh_tokens import RefreshTokenService, hash_refresh_token
from tillguard.storage.models import utcnow


@pytest.fixture
def service(store, settings):
    return RefreshTokenService(store, settings)


class TestGenerateAndValidate:
    async def test_only_hash_is_persisted(self, service, store):
        token = await service.generate("u1")

        assert store.get_refresh_token(token) is None
        record = store.get_refresh_token(hash_refresh_token(token))
        assert record.user_id == "u1"
        assert not record.is_revoked

    async def test_validate_returns_owner(self, service):
        token = await service.generate("u1")
        assert await service.validate(token) == "u1"
        assert await service.validate("not-a-token") is None
        assert await service.validate("") is None

    async def test_expired_token_does_not_validate(self, service, store):
        token = await service.generate("u1")
        record = store.refresh_tokens[hash_refresh_token(token)]
        record.expires_at = utcnow() - timedelta(seconds=1)

        assert await service.validate(token) is None
        assert await service.rotate(token) is None


class TestRotation:
    async def test_rotate_revokes_old_and_links_replacement(self, service, store):
        old = await service.generate("u1")
        new = await service.rotate(old)

        assert new and new != old
        old_record = store.get_refresh_token(hash_refresh_token(old))
        assert old_record.is_revoked
        assert old_record.replaced_by == hash_refresh_token(new)
        assert await service.validate(new) == "u1"

    async def test_rotated_token_is_single_use(self, service):
        old = await service.generate("u1")
        assert await service.rotate(old)
        assert await service.rotate(old) is None
        assert await service.validate(old) is None

    async def test_concurrent_rotation_yields_exactly_one_success(self, service, store):
        old = await service.generate("u1")

        results = await asyncio.gather(*(service.rotate(old) for _ in range(16)))

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        live = [r for r in store.refresh_tokens.values() if r.user_id == "u1" and not r.is_revoked]
        assert len(live) == 1
        assert live[0].token_hash == hash_refresh_token(winners[0])

    async def test_unknown_token_creates_nothing(self, service, store):
        before = len(store.refresh_tokens)
        assert await service.rotate("never-issued") is None
        assert len(store.refresh_tokens) == before


class TestRevocation:
    async def test_revoke_is_idempotent(self, service):
        token = await service.generate("u1")
        assert await service.revoke(token) is True
        assert await service.revoke(token) is False
        assert await service.validate(token) is None

    async def test_revoke_all_for_user(self, service):
        tokens = [await service.generate("u1") for _ in range(3)]
        other = await service.generate("u2")

        assert await service.revoke_all("u1") == 3
        for token in tokens:
            assert await service.validate(token) is None
        assert await service.validate(other) == "u2"

    async def test_sweep_deletes_expired(self, service, store):
        stale = await service.generate("u1")
        fresh = await service.generate("u1")
        store.refresh_tokens[hash_refresh_token(stale)].expires_at = utcnow() - timedelta(days=1)

        assert await service.sweep_expired() == 1
        assert store.get_refresh_token(hash_refresh_token(stale)) is None
        assert await service.validate(fresh) == "u1"

    async def test_inspect_exposes_revoked_records(self, service):
        token = await service.generate("u1")
        await service.rotate(token)

        record = await service.inspect(token)
        assert record is not None and record.is_revoked

from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from tillguard.config import Settings
from tillguard.logging import get_logger
from tillguard.service.bounded import run_bounded
from tillguard.service.errors import StoreUnavailableError
from tillguard.storage.models import RefreshToken

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class RefreshTokenService:
    """Opaque, single-use refresh tokens.

    Only the SHA-256 of a token is persisted. ``rotate`` hands the old hash and
    its replacement to the store in one call, which revokes and inserts under a
    single lock or transaction; of two concurrent rotations of the same token
    exactly one gets a replacement.
    """

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._ttl = timedelta(days=settings.refresh_token_ttl_days)
        self._timeout = settings.store_timeout_seconds

    @property
    def ttl_seconds(self) -> int:
        return int(self._ttl.total_seconds())

    async def _call(self, func, *args, **kwargs):
        return await run_bounded(func, *args, timeout=self._timeout, **kwargs)

    async def generate(self, user_id: str) -> str:
        token = secrets.token_urlsafe(48)
        record = RefreshToken.new(user_id, hash_refresh_token(token), self._ttl, now=_now())
        await self._call(self.store.create_refresh_token, record)
        return token

    async def inspect(self, token: str) -> Optional[RefreshToken]:
        if not token:
            return None
        try:
            return await self._call(self.store.get_refresh_token, hash_refresh_token(token))
        except StoreUnavailableError:
            return None

    async def validate(self, token: str) -> Optional[str]:
        """Return the owning user id if the token is live, otherwise ``None``."""
        record = await self.inspect(token)
        if record is None or not record.is_valid(_now()):
            return None
        return record.user_id

    async def rotate(self, old_token: str) -> Optional[str]:
        if not old_token:
            return None
        now = _now()
        old_hash = hash_refresh_token(old_token)
        try:
            current = await self._call(self.store.get_refresh_token, old_hash)
        except StoreUnavailableError:
            return None
        if current is None or not current.is_valid(now):
            return None
        new_token = secrets.token_urlsafe(48)
        replacement = RefreshToken.new(
            current.user_id, hash_refresh_token(new_token), self._ttl, now=now
        )
        try:
            rotated = await self._call(
                self.store.rotate_refresh_token, old_hash, replacement, now
            )
        except StoreUnavailableError:
            return None
        if rotated is None:
            logger.warning("refresh_token_rotation_lost", user_id=current.user_id)
            return None
        return new_token

    async def revoke(self, token: str) -> bool:
        if not token:
            return False
        return await self._call(self.store.revoke_refresh_token, hash_refresh_token(token))

    async def revoke_all(self, user_id: str) -> int:
        revoked = await self._call(self.store.revoke_user_refresh_tokens, user_id)
        logger.info("refresh_tokens_revoked", user_id=user_id, count=revoked)
        return revoked

    async def sweep_expired(self) -> int:
        removed = await self._call(self.store.delete_expired_refresh_tokens, _now())
        if removed:
            logger.debug("refresh_tokens_swept", removed=removed)
        return removed

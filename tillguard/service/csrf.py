from __future__ import annotations

import hashlib
import hmac
import secrets

from tillguard.logging import get_logger
from tillguard.service.errors import (
    CsrfExpiredError,
    CsrfMismatchError,
    CsrfMissingError,
)
from tillguard.storage.kv import KeyValueStore

logger = get_logger(__name__)

CSRF_COOKIE_NAME = "csrf_token"
CSRF_HEADER_NAMES = ("X-CSRF-Token", "X-XSRF-Token")
CSRF_FORM_FIELD = "_csrf"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

_KEY_PREFIX = "csrf:"


class CsrfGuard:
    """Session-bound double-submit tokens.

    A token is ``<random>.<hmac(secret, random + session_id)>`` and the live
    token for each session is kept in the key-value store. A successful
    validation swaps in a fresh token with compare-and-set, so a token is
    accepted at most once even when two requests race with it.
    """

    def __init__(self, kv: KeyValueStore, *, secret: str, ttl_minutes: int = 24 * 60) -> None:
        self.kv = kv
        self._secret = secret.encode()
        self.ttl_seconds = ttl_minutes * 60

    def _mac(self, nonce: str, session_id: str) -> str:
        return hmac.new(self._secret, f"{nonce}{session_id}".encode(), hashlib.sha256).hexdigest()

    def _new_token(self, session_id: str) -> str:
        nonce = secrets.token_urlsafe(32)
        return f"{nonce}.{self._mac(nonce, session_id)}"

    def is_bound_to(self, token: str, session_id: str) -> bool:
        if not token.isascii():
            return False
        nonce, sep, mac = token.partition(".")
        if not sep or not nonce or not mac:
            return False
        return hmac.compare_digest(mac, self._mac(nonce, session_id))

    async def issue(self, session_id: str) -> str:
        token = self._new_token(session_id)
        await self.kv.set(_KEY_PREFIX + session_id, token, self.ttl_seconds)
        return token

    async def validate(self, session_id: str | None, token: str | None) -> str:
        """Check ``token`` for ``session_id`` and return its replacement."""
        if not session_id or not token:
            raise CsrfMissingError()
        stored = await self.kv.get(_KEY_PREFIX + session_id)
        if stored is None:
            raise CsrfExpiredError()
        # compare_digest only accepts ASCII str
        if (
            not token.isascii()
            or not self.is_bound_to(token, session_id)
            or not hmac.compare_digest(stored, token)
        ):
            logger.warning("csrf_token_mismatch", session_id=session_id)
            raise CsrfMismatchError()
        replacement = self._new_token(session_id)
        swapped = await self.kv.compare_and_set(
            _KEY_PREFIX + session_id, token, replacement, self.ttl_seconds
        )
        if not swapped:
            logger.warning("csrf_token_reused", session_id=session_id)
            raise CsrfMismatchError()
        return replacement

    async def revoke(self, session_id: str | None) -> None:
        if session_id:
            await self.kv.delete(_KEY_PREFIX + session_id)

    async def sweep(self) -> int:
        removed = await self.kv.sweep(_KEY_PREFIX)
        if removed:
            logger.debug("csrf_tokens_swept", removed=removed)
        return removed

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from redis.exceptions import RedisError

from tillguard.config import Settings
from tillguard.logging import get_logger
from tillguard.service.errors import (
    TokenBlacklistedError,
    TokenExpiredError,
    TokenInvalidError,
)
from tillguard.storage.kv import KeyValueStore
from tillguard.storage.models import User

logger = get_logger(__name__)

BLACKLIST_PREFIX = "blacklist:"
CLOCK_SKEW_LEEWAY_SECONDS = 30


def _now() -> datetime:
    return datetime.now(timezone.utc)


def token_fingerprint(token: str) -> str:
    """Stable digest used as the blacklist key; raw tokens are never stored."""
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass
class IssuedAccessToken:
    token: str
    expires_in_seconds: int
    jti: str
    expires_at: datetime


class TokenSigner:
    """HS256 access tokens with an expiring blacklist.

    ``verify`` consults the blacklist before looking at the signature or the
    expiry, so a revoked token reports ``token_blacklisted`` even once it has
    also expired. A blacklist lookup that fails is treated as a rejection.
    """

    def __init__(self, settings: Settings, kv: KeyValueStore) -> None:
        self.settings = settings
        self.kv = kv
        self._leeway = timedelta(seconds=CLOCK_SKEW_LEEWAY_SECONDS)
        self._kv_timeout = settings.store_timeout_seconds

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def signed_claims(self, token: str) -> dict[str, Any]:
        """Check structure, algorithm, signature, issuer and audience. Not expiry."""
        if not token or not isinstance(token, str) or not token.isascii():
            raise TokenInvalidError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError()
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError()
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenInvalidError()
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise TokenInvalidError()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError()
        if not isinstance(payload, dict):
            raise TokenInvalidError()
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud or payload.get("token_type") != "access":
            raise TokenInvalidError()
        try:
            payload["exp"] = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError()
        return payload

    def issue(self, user: User, *, session_id: Optional[str] = None) -> IssuedAccessToken:
        now = _now()
        ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        expires_at = now + ttl
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "role": user.role,
            "sid": session_id,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": jti,
            "token_type": "access",
        }
        return IssuedAccessToken(
            token=self._encode_jwt(payload),
            expires_in_seconds=int(ttl.total_seconds()),
            jti=jti,
            expires_at=expires_at,
        )

    async def is_blacklisted(self, token: str) -> bool:
        try:
            hit = await asyncio.wait_for(
                self.kv.get(BLACKLIST_PREFIX + token_fingerprint(token)), self._kv_timeout
            )
        except (asyncio.TimeoutError, RedisError, OSError) as exc:
            logger.error("token_blacklist_lookup_failed", error=str(exc))
            raise TokenInvalidError("Unable to verify token")
        return hit is not None

    async def verify(self, token: str) -> dict[str, Any]:
        if not token:
            raise TokenInvalidError()
        if await self.is_blacklisted(token):
            raise TokenBlacklistedError()
        payload = self.signed_claims(token)
        if payload["exp"] <= _now().timestamp() - self._leeway.total_seconds():
            raise TokenExpiredError()
        return payload

    def remaining_ttl(self, token: str) -> int:
        """Seconds until expiry of a correctly signed token, 0 if already past."""
        payload = self.signed_claims(token)
        return max(0, int(payload["exp"] - _now().timestamp()))

    async def blacklist(self, token: str, ttl_seconds: int) -> None:
        # Entries outlive the token by the verification leeway
        ttl_seconds = int(ttl_seconds) + CLOCK_SKEW_LEEWAY_SECONDS
        if ttl_seconds <= 0:
            return
        await asyncio.wait_for(
            self.kv.set(BLACKLIST_PREFIX + token_fingerprint(token), "1", ttl_seconds),
            self._kv_timeout,
        )
        logger.info("access_token_blacklisted", ttl_seconds=ttl_seconds)

    async def sweep_blacklist(self) -> int:
        removed = await self.kv.sweep(BLACKLIST_PREFIX)
        if removed:
            logger.debug("token_blacklist_swept", removed=removed)
        return removed

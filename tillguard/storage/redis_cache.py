from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Key-value storage on Redis for the blacklist, CSRF map and limiter.

    Implements the same interface as :class:`tillguard.storage.kv.MemoryKV`.
    Expiry is native, so ``sweep`` has nothing to do.
    """

    # Increment and attach the TTL only when the key is created, atomically
    _INCR_WITH_TTL_SCRIPT = """
local value = redis.call('INCR', KEYS[1])
if value == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return value
"""

    _COMPARE_AND_SET_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current ~= ARGV[1] then
  return 0
end
redis.call('SET', KEYS[1], ARGV[2], 'EX', ARGV[3])
return 1
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0, prefix: str = "tillguard:"):
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_with_ttl = self.client.register_script(self._INCR_WITH_TTL_SCRIPT)
        self._compare_and_set = self.client.register_script(self._COMPARE_AND_SET_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async pool off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(self._key(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(self._key(key), value, ex=max(int(ttl_seconds), 1))

    async def delete(self, key: str) -> bool:
        return bool(await self.client.delete(self._key(key)))

    async def incr(self, key: str, ttl_seconds: int) -> int:
        result = await self._incr_with_ttl(
            keys=[self._key(key)], args=[max(int(ttl_seconds), 1)]
        )
        return int(result)

    async def compare_and_set(
        self, key: str, expected: str, new: str, ttl_seconds: int
    ) -> bool:
        result = await self._compare_and_set(
            keys=[self._key(key)], args=[expected, new, max(int(ttl_seconds), 1)]
        )
        return bool(int(result))

    async def sweep(self, prefix: str = "") -> int:
        return 0

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisCache"]

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper exposing the TTL key-store surface used for OTPs."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    # Atomic increment bounded by a ceiling; TTL is reset on every increment
    _INCREMENT_WITH_CEILING_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local ceiling = tonumber(ARGV[1])
if current >= ceiling then
  return {0, current}
end
current = redis.call('INCR', KEYS[1])
redis.call('EXPIRE', KEYS[1], ARGV[2])
return {1, current}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment_with_ceiling = self.client.register_script(
            self._INCREMENT_WITH_CEILING_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=ttl_seconds)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def has_key(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def get_ttl(self, key: str) -> Optional[int]:
        ttl = await self.client.ttl(key)
        # -2: missing key, -1: key without expiry
        if ttl is None or ttl < 0:
            return None
        return int(ttl)

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        return list(await self.client.mget(list(keys)))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Atomically claim ``key`` using SET NX EX."""
        return bool(await self.client.set(key, value, ex=ttl_seconds, nx=True))

    async def increment_with_ceiling(
        self, key: str, ceiling: int, ttl_seconds: int
    ) -> Tuple[bool, int]:
        """Increment a counter only while it is below ``ceiling``.

        Returns:
            Tuple of (incremented: bool, current_count: int)
        """
        result = await self._increment_with_ceiling(
            keys=[key], args=[ceiling, ttl_seconds]
        )
        return bool(int(result[0])), int(result[1])

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment_with_ceiling = self.client.register_script(
            RedisCache._INCREMENT_WITH_CEILING_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.client.set(key, value, ex=ttl_seconds)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self.client.delete(*keys))

    async def has_key(self, key: str) -> bool:
        return bool(self.client.exists(key))

    async def get_ttl(self, key: str) -> Optional[int]:
        ttl = self.client.ttl(key)
        if ttl is None or ttl < 0:
            return None
        return int(ttl)

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        return list(self.client.mget(list(keys)))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(self.client.set(key, value, ex=ttl_seconds, nx=True))

    async def increment_with_ceiling(
        self, key: str, ceiling: int, ttl_seconds: int
    ) -> Tuple[bool, int]:
        result = self._increment_with_ceiling(keys=[key], args=[ceiling, ttl_seconds])
        return bool(int(result[0])), int(result[1])

    async def close(self) -> None:
        """Close Redis connection."""
        self.client.close()

from __future__ import annotations

from typing import Iterable, Optional, Tuple

import redis.asyncio as aioredis


class RedisCache:
    """Redis-backed expiring store for refresh sessions, blacklist and lockout."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # 5 seconds

    # Increment and arm the TTL in one step so a crash between INCR and
    # EXPIRE can never leave an immortal counter.
    _INCR_WITH_TTL_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""

    def __init__(
        self,
        redis_url: str,
        *,
        key_prefix: str = "",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_with_ttl = self.client.register_script(self._INCR_WITH_TTL_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds < 1:
            raise ValueError("ttl_seconds must be at least 1")
        await self.client.set(self._key(key), value, ex=ttl_seconds)

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(self._key(key))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(self._key(key)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*(self._key(k) for k in keys)))

    async def pop(self, key: str) -> Optional[str]:
        return await self.client.getdel(self._key(key))

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        count = await self._incr_with_ttl(keys=[self._key(key)], args=[ttl_seconds])
        return int(count)

    async def ttl(self, key: str) -> Optional[int]:
        remaining = await self.client.ttl(self._key(key))
        # -2: missing key, -1: no expiry
        if remaining is None or remaining < 0:
            return None
        return int(remaining)

    async def write_batch(
        self,
        *,
        sets: Iterable[Tuple[str, str, int]] = (),
        deletes: Iterable[str] = (),
    ) -> None:
        sets = list(sets)
        if any(ttl_seconds < 1 for _, _, ttl_seconds in sets):
            raise ValueError("ttl_seconds must be at least 1")
        # MULTI/EXEC: the writes land together in one round trip
        pipe = self.client.pipeline(transaction=True)
        for key, value, ttl_seconds in sets:
            pipe.set(self._key(key), value, ex=ttl_seconds)
        for key in deletes:
            pipe.delete(self._key(key))
        await pipe.execute()

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()

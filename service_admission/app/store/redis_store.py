"""
Redis-backed bucket store.
"""

from typing import Any, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.logging import get_logger
from shared.errors import StoreUnavailableError


class RedisBucketStore:
    """Bucket store on top of a shared Redis deployment."""

    def __init__(self, redis_url: str, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.logger = get_logger("admission.store.redis")
        self.redis: Optional[redis.Redis] = None

    async def start(self):
        """Connect and verify the connection."""
        self.redis = redis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=self.socket_timeout,
            socket_timeout=self.socket_timeout,
            retry_on_timeout=True,
            health_check_interval=30
        )

        try:
            await self.redis.ping()
            self.logger.info("Redis bucket store started")
        except RedisError as e:
            self.logger.error("Redis bucket store unreachable at startup", error=str(e))

    async def stop(self):
        """Close the connection pool."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            self.logger.info("Redis bucket store stopped")

    async def _call(self, op: str, awaitable_factory) -> Any:
        if self.redis is None:
            raise StoreUnavailableError("Redis bucket store not started", {"op": op})
        try:
            return await awaitable_factory(self.redis)
        except RedisError as e:
            raise StoreUnavailableError(str(e), {"op": op}) from e

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", lambda r: r.get(key))

    async def set(self, key: str, value: str) -> None:
        await self._call("set", lambda r: r.set(key, value))

    async def setex(self, key: str, seconds: int, value: str) -> None:
        await self._call("setex", lambda r: r.setex(key, seconds, value))

    async def incr(self, key: str) -> int:
        return int(await self._call("incr", lambda r: r.incr(key)))

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self._call("expire", lambda r: r.expire(key, seconds)))

    async def ttl(self, key: str) -> int:
        return int(await self._call("ttl", lambda r: r.ttl(key)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._call("delete", lambda r: r.delete(*keys)))

    async def sadd(self, key: str, *members: str) -> int:
        return int(await self._call("sadd", lambda r: r.sadd(key, *members)))

    async def srem(self, key: str, *members: str) -> int:
        return int(await self._call("srem", lambda r: r.srem(key, *members)))

    async def smembers(self, key: str) -> List[str]:
        members = await self._call("smembers", lambda r: r.smembers(key))
        return sorted(members or [])

    async def scard(self, key: str) -> int:
        return int(await self._call("scard", lambda r: r.scard(key)))

    async def ping(self) -> bool:
        return bool(await self._call("ping", lambda r: r.ping()))

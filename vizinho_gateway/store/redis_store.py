"""
Vizinho Virtual Gateway - Redis Security Store

Production backend on redis.asyncio. Windowed counters use a MULTI/EXEC
pipeline (SET NX EX, INCR, TTL) so concurrent requests never race through a
read-modify-write in the application.
"""

import logging
from typing import Any, Awaitable, Callable, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from vizinho_gateway.store.base import SecurityStore, StoreError

logger = logging.getLogger(__name__)


class RedisSecurityStore(SecurityStore):
    """Redis-backed security store."""

    backend_name = "redis"

    def __init__(self, redis_url: str, timeout: float = 0.5, client: Optional[Any] = None):
        self._redis_url = redis_url
        self._timeout = timeout
        self._client = client

    async def connect(self) -> None:
        if self._client is None:
            self._client = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=self._timeout,
                socket_connect_timeout=self._timeout,
            )
        try:
            await self._client.ping()
            logger.info("Security store connected: %s", self._redis_url.split("@")[-1])
        except RedisError as e:
            # Requests still flow (fail-open); readiness reports the outage.
            logger.error("Security store unreachable at startup: %s", e)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _run(self, op: str, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        if self._client is None:
            raise StoreError(f"Redis {op} failed: store not connected")
        try:
            return await func(*args, **kwargs)
        except RedisError as e:
            raise StoreError(f"Redis {op} failed: {e}") from e

    async def ping(self) -> bool:
        try:
            return bool(await self._run("PING", lambda: self._client.ping()))
        except StoreError as e:
            logger.error("%s", e)
            return False

    async def get(self, key: str) -> Optional[str]:
        return await self._run("GET", lambda: self._client.get(key))

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        if ttl:
            await self._run("SETEX", lambda: self._client.setex(key, ttl, value))
        else:
            await self._run("SET", lambda: self._client.set(key, value))

    async def delete(self, key: str) -> bool:
        return await self._run("DEL", lambda: self._client.delete(key)) > 0

    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        async def _incr() -> Tuple[int, int]:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.set(key, 0, ex=window_seconds, nx=True)
                pipe.incr(key)
                pipe.ttl(key)
                _, count, ttl = await pipe.execute()
            if ttl < 0:
                # Counter lost its expiry (e.g. written by an older client)
                await self._client.expire(key, window_seconds)
                ttl = window_seconds
            return int(count), int(ttl)

        return await self._run("INCR", _incr)

    async def peek_counter(self, key: str) -> Tuple[int, int]:
        async def _peek() -> Tuple[int, int]:
            async with self._client.pipeline(transaction=False) as pipe:
                pipe.get(key)
                pipe.ttl(key)
                value, ttl = await pipe.execute()
            return int(value or 0), max(int(ttl), 0)

        return await self._run("GET", _peek)

    async def append(self, key: str, value: str, ttl: int) -> None:
        async def _append() -> None:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.lpush(key, value)
                pipe.expire(key, ttl)
                await pipe.execute()

        await self._run("LPUSH", _append)

    async def read_list(self, key: str, limit: int) -> List[str]:
        return await self._run("LRANGE", lambda: self._client.lrange(key, 0, max(limit, 1) - 1))

    async def count_keys(self, prefix: str) -> int:
        async def _count() -> int:
            count = 0
            async for _ in self._client.scan_iter(match=f"{prefix}*", count=500):
                count += 1
            return count

        return await self._run("SCAN", _count)

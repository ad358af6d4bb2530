"""
Key-value cache backends used by enrichment and the search cache.

Both backends expose the same small surface: get, set with a TTL,
delete, exists, plus publish for refresh signals. Index sets group keys
so they can be dropped together later. Values are JSON round-tripped so
a MemoryCache behaves like RedisCache in tests.

Cache failures are never fatal: RedisCache logs and degrades to a miss.
"""

import asyncio
import json
import logging
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

import redis.asyncio as redis

from litharvest.config.settings import Settings, get_settings

logger = logging.getLogger(__name__)

REFRESH_CHANNEL = "cache:refresh"

SignalHandler = Callable[[str], Awaitable[None]]


@runtime_checkable
class CacheBackend(Protocol):
    """Interface the enrichment client and search cache depend on."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def publish(self, channel: str, message: str) -> None: ...

    async def add_to_index(self, index: str, key: str, ttl: int) -> None: ...

    async def pop_index(self, index: str) -> list[str]: ...


class RedisCache:
    """
    Redis-backed cache.

    Usage:
        cache = RedisCache.from_url("redis://localhost:6379/0")
        await cache.set("enrich:10.1/x", {"title": "..."}, ttl=3600)
        await cache.close()
    """

    def __init__(self, client: redis.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        return cls(redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._redis.get(key)
        except redis.RedisError as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding undecodable cache entry {key}")
            await self.delete(key)
            return None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self._redis.setex(key, ttl, json.dumps(value, default=str))
        except redis.RedisError as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except redis.RedisError as e:
            logger.warning(f"Cache delete failed for {key}: {e}")

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._redis.exists(key))
        except redis.RedisError as e:
            logger.warning(f"Cache exists check failed for {key}: {e}")
            return False

    async def publish(self, channel: str, message: str) -> None:
        try:
            await self._redis.publish(channel, message)
        except redis.RedisError as e:
            logger.warning(f"Publish to {channel} failed: {e}")

    async def add_to_index(self, index: str, key: str, ttl: int) -> None:
        """Add key to the index set; the set lives at least as long as its newest key."""
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.sadd(index, key)
                pipe.expire(index, ttl)
                await pipe.execute()
        except redis.RedisError as e:
            logger.warning(f"Index update failed for {index}: {e}")

    async def pop_index(self, index: str) -> list[str]:
        """Read and drop an index set in one transaction."""
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.smembers(index)
                pipe.delete(index)
                members, _ = await pipe.execute()
        except redis.RedisError as e:
            logger.warning(f"Index read failed for {index}: {e}")
            return []
        return sorted(members or ())

    async def close(self) -> None:
        await self._redis.aclose()


class MemoryCache:
    """
    In-process cache with lazy expiry on read and a periodic sweep.

    The sweep only reclaims memory; correctness relies on the expiry
    check in get()/exists().
    """

    def __init__(self, sweep_interval: float = 60.0):
        self._entries: dict[str, tuple[str, float]] = {}
        self._indexes: dict[str, tuple[set[str], float]] = {}
        self._sweep_interval = sweep_interval
        self._sweep_task: asyncio.Task | None = None
        self._subscribers: dict[str, list[SignalHandler]] = defaultdict(list)

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if time.monotonic() >= expires_at:
            del self._entries[key]
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        self._entries[key] = (
            json.dumps(value, default=str),
            time.monotonic() + ttl,
        )

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    def subscribe(self, channel: str, handler: SignalHandler) -> None:
        self._subscribers[channel].append(handler)

    async def publish(self, channel: str, message: str) -> None:
        for handler in list(self._subscribers.get(channel, ())):
            try:
                await handler(message)
            except Exception as e:
                logger.warning(f"Subscriber on {channel} failed: {e}")

    async def add_to_index(self, index: str, key: str, ttl: int) -> None:
        members, expires_at = self._indexes.get(index, (set(), 0.0))
        if time.monotonic() >= expires_at:
            members = set()
        members.add(key)
        self._indexes[index] = (members, max(expires_at, time.monotonic() + ttl))

    async def pop_index(self, index: str) -> list[str]:
        members, expires_at = self._indexes.pop(index, (set(), 0.0))
        if time.monotonic() >= expires_at:
            return []
        return sorted(members)

    def sweep(self) -> int:
        """Drop expired entries and index sets. Returns the number of entries removed."""
        now = time.monotonic()
        expired = [k for k, (_, exp) in self._entries.items() if now >= exp]
        for key in expired:
            del self._entries[key]
        for index in [i for i, (_, exp) in self._indexes.items() if now >= exp]:
            del self._indexes[index]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    async def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(
                self._sweep_loop(), name="memory_cache_sweep"
            )

    async def close(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            removed = self.sweep()
            if removed:
                logger.debug(f"Memory cache sweep removed {removed} entries")


def build_cache(settings: Settings | None = None) -> RedisCache | MemoryCache:
    """Construct the configured cache backend (not yet started)."""
    settings = settings or get_settings()
    if settings.cache_backend == "memory":
        return MemoryCache(sweep_interval=settings.memory_cache_sweep_seconds)
    return RedisCache.from_url(str(settings.redis_url))

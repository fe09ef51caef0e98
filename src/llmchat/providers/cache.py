"""Pluggable key/value caches for gateway metadata.

:class:`MemoryCache` suits a single process; :class:`RedisCache` lets several
workers share model-info lookups.  Values must be JSON-serializable.
"""

import json
import time
from collections.abc import Callable
from typing import Any, Protocol

from redis.asyncio import Redis


class CacheBackend(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def clear(self) -> None: ...


class MemoryCache:
    """In-process cache; expired entries are dropped when read."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: dict[str, tuple[Any, float | None]] = {}
        self._clock = clock

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() > expires_at:
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        self._entries[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def clear(self) -> None:
        self._entries.clear()


class NoCache:
    """Cache that never stores anything."""

    async def get(self, key: str) -> Any | None:
        return None

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        return None

    async def delete(self, key: str) -> None:
        return None

    async def clear(self) -> None:
        return None


class RedisCache:
    """Redis-backed cache; keys are namespaced with *prefix*."""

    def __init__(self, redis: Redis, prefix: str = "llmchat:") -> None:
        self._redis = redis
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "llmchat:") -> "RedisCache":
        return cls(Redis.from_url(url, socket_timeout=5), prefix=prefix)

    async def get(self, key: str) -> Any | None:
        raw = await self._redis.get(self._prefix + key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        payload = json.dumps(value)
        if ttl:
            await self._redis.setex(self._prefix + key, int(ttl), payload)
        else:
            await self._redis.set(self._prefix + key, payload)

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._prefix + key)

    async def clear(self) -> None:
        async for key in self._redis.scan_iter(match=self._prefix + "*"):
            await self._redis.delete(key)

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    async def aclose(self) -> None:
        await self._redis.aclose()


def cache_from_url(url: str | None) -> CacheBackend:
    """Return a Redis cache for *url*, or an in-memory cache when unset."""
    if url:
        return RedisCache.from_url(url)
    return MemoryCache()

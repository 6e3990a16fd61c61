"""Key-value cache port with explicit open/close lifecycle.

The cache is advisory: callers treat every failure as a miss and fall back to
the durable store.
"""

from __future__ import annotations

import logging
import time
from typing import Protocol

from redis.asyncio import Redis

from account_security.core.settings import settings

logger = logging.getLogger(__name__)


class Cache(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, *keys: str) -> None: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class RedisCache:
    def __init__(self, url: str) -> None:
        self._url = url
        self._client: Redis | None = None

    @property
    def client(self) -> Redis:
        if self._client is None:
            self._client = Redis.from_url(self._url, decode_responses=True)
        return self._client

    async def get(self, key: str) -> str | None:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.setex(key, ttl_seconds, value)

    async def delete(self, *keys: str) -> None:
        if keys:
            await self.client.delete(*keys)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class MemoryCache:
    """In-process TTL map for tests and single-node development."""

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._items: dict[str, tuple[str, float]] = {}

    async def get(self, key: str) -> str | None:
        item = self._items.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at <= self._clock():
            self._items.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._items[key] = (value, self._clock() + ttl_seconds)

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._items.pop(key, None)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._items.clear()

    def __contains__(self, key: str) -> bool:
        item = self._items.get(key)
        return item is not None and item[1] > self._clock()


class NullCache:
    async def get(self, key: str) -> str | None:
        return None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        return None

    async def delete(self, *keys: str) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


def build_cache(url: str | None = None) -> Cache:
    url = settings.redis_url if url is None else url
    if not url:
        logger.info("Cache disabled; reads go to the database")
        return NullCache()
    if url.startswith("memory://"):
        return MemoryCache()
    return RedisCache(url)


_cache: Cache | None = None


def get_cache() -> Cache:
    global _cache
    if _cache is None:
        _cache = build_cache()
    return _cache


def set_cache(cache: Cache | None) -> None:
    global _cache
    _cache = cache


async def close_cache() -> None:
    global _cache
    if _cache is None:
        return
    try:
        await _cache.close()
    except Exception as exc:
        logger.warning("Cache close failed: %s", exc)
    finally:
        _cache = None

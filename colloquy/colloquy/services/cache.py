"""
Key/value cache backends.

All backends share one async get/set/delete interface so call sites do not
know whether Redis or the in-process fallback is serving them. Values are
JSON-serializable structures.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from threading import Lock
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from colloquy.config import Settings

logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    async def start(self) -> None:
        """Acquire connections or background tasks."""

    async def stop(self) -> None:
        """Release whatever start() acquired."""


class MemoryCache(CacheBackend):
    """In-process cache with TTL and a periodic sweep of expired entries."""

    def __init__(self, default_ttl: int = 300, sweep_interval: float = 60.0):
        self.entries: dict[str, tuple[Any, float]] = {}
        self.lock = Lock()
        self.default_ttl = default_ttl
        self.sweep_interval = sweep_interval
        self._sweeper: asyncio.Task | None = None

    async def get(self, key: str) -> Optional[Any]:
        with self.lock:
            if key in self.entries:
                value, expiry = self.entries[key]
                if time.monotonic() < expiry:
                    return value
                del self.entries[key]
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        expiry = time.monotonic() + (ttl or self.default_ttl)
        with self.lock:
            self.entries[key] = (value, expiry)

    async def delete(self, key: str) -> None:
        with self.lock:
            self.entries.pop(key, None)

    def clear(self) -> None:
        with self.lock:
            self.entries.clear()

    def sweep(self) -> int:
        """Remove all expired entries. Returns how many were dropped."""
        now = time.monotonic()
        with self.lock:
            expired = [k for k, (_, expiry) in self.entries.items() if now >= expiry]
            for key in expired:
                del self.entries[key]
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            dropped = self.sweep()
            if dropped:
                logger.debug(f"Swept {dropped} expired cache entries")

    async def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        self.clear()


class RedisCache(CacheBackend):
    def __init__(self, redis_url: str, default_ttl: int = 300, prefix: str = "colloquy:"):
        self.redis_url = redis_url
        self.default_ttl = default_ttl
        self.prefix = prefix
        self.redis = None

    async def start(self) -> None:
        self.redis = redis.from_url(self.redis_url, decode_responses=True)

    async def stop(self) -> None:
        if self.redis:
            await self.redis.close()
            self.redis = None

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.redis.get(self.prefix + key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        await self.redis.set(self.prefix + key, json.dumps(value), ex=ttl or self.default_ttl)

    async def delete(self, key: str) -> None:
        await self.redis.delete(self.prefix + key)


class FallbackCache(CacheBackend):
    """Serve from the primary backend, dropping to the fallback while it is unreachable."""

    def __init__(self, primary: CacheBackend, fallback: CacheBackend):
        self.primary = primary
        self.fallback = fallback

    async def start(self) -> None:
        await self.fallback.start()
        await self.primary.start()

    async def stop(self) -> None:
        await self.primary.stop()
        await self.fallback.stop()

    async def get(self, key: str) -> Optional[Any]:
        try:
            return await self.primary.get(key)
        except (RedisError, OSError) as e:
            logger.warning(f"Primary cache get failed for {key}, using fallback: {e}")
            return await self.fallback.get(key)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        try:
            await self.primary.set(key, value, ttl)
        except (RedisError, OSError) as e:
            logger.warning(f"Primary cache set failed for {key}, using fallback: {e}")
            await self.fallback.set(key, value, ttl)

    async def delete(self, key: str) -> None:
        # Both, so a stale fallback entry cannot outlive a primary delete
        await self.fallback.delete(key)
        try:
            await self.primary.delete(key)
        except (RedisError, OSError) as e:
            logger.warning(f"Primary cache delete failed for {key}: {e}")


def build_cache(config: Settings) -> CacheBackend:
    """Redis with an in-process fallback when a Redis URL is configured, else memory only."""
    memory = MemoryCache(
        default_ttl=config.trace_cache_ttl_seconds,
        sweep_interval=config.cache_sweep_interval_seconds,
    )
    if not config.redis_url:
        return memory
    return FallbackCache(
        RedisCache(config.redis_url, default_ttl=config.trace_cache_ttl_seconds), memory
    )

"""
Cache Abstraction Layer

Key/value store with TTL used by the read paths, the transform worker and the
version ledger. RedisCache is the production backend; InMemoryCache serves
local development and tests and takes an injectable clock so expiry can be
simulated.
"""

import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from mediaxform.core.config import settings
from mediaxform.core.exceptions import TransientIOError


class ICache(ABC):
    """Interface for cache operations."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None when absent or expired."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        """Store a value, optionally expiring after ttl_seconds."""

    @abstractmethod
    async def add(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        """Store a value only if the key is absent. Returns True when stored."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key if present."""

    @abstractmethod
    async def incr(self, key: str) -> int:
        """Atomically increment an integer counter (absent counts as 0)."""


class RedisCache(ICache):
    """Redis-backed cache. Every call is a single round trip."""

    def __init__(self, client: redis.Redis):
        self.redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        return cls(redis.from_url(url, encoding="utf-8", decode_responses=True))

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.redis.get(key)
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise TransientIOError(f"Cache get failed: {e}", service="redis")

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        try:
            await self.redis.set(key, value, ex=ttl_seconds)
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise TransientIOError(f"Cache set failed: {e}", service="redis")

    async def add(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        try:
            return bool(await self.redis.set(key, value, ex=ttl_seconds, nx=True))
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise TransientIOError(f"Cache add failed: {e}", service="redis")

    async def delete(self, key: str) -> None:
        try:
            await self.redis.delete(key)
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise TransientIOError(f"Cache delete failed: {e}", service="redis")

    async def incr(self, key: str) -> int:
        try:
            return int(await self.redis.incr(key))
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise TransientIOError(f"Cache incr failed: {e}", service="redis")

    async def close(self):
        await self.redis.aclose()


class InMemoryCache(ICache):
    """Process-local cache with TTL semantics matching Redis."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def _expiry(self, ttl_seconds: Optional[int]) -> Optional[float]:
        return self._clock() + ttl_seconds if ttl_seconds else None

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        self._entries[key] = (value, self._expiry(ttl_seconds))

    async def add(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        if self._live(key) is not None:
            return False
        self._entries[key] = (value, self._expiry(ttl_seconds))
        return True

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def incr(self, key: str) -> int:
        current = self._live(key)
        _, expires_at = self._entries.get(key, (None, None))
        value = int(current or 0) + 1
        self._entries[key] = (str(value), expires_at)
        return value

    def keys(self):
        """Live keys, for diagnostics."""
        return [key for key in list(self._entries) if self._live(key) is not None]


def build_cache(backend: Optional[str] = None) -> ICache:
    """Create the configured cache backend."""
    backend = (backend or settings.CACHE_BACKEND).lower()
    if backend == "memory":
        return InMemoryCache()
    return RedisCache.from_url(settings.REDIS_URL)

"""Transient key-value cache for short-lived challenge state.

If REDIS_URL is configured, uses Redis so every worker sees the same
challenges. Otherwise falls back to an in-memory TTL cache, which is only
correct when the host runs a single process.
"""
import asyncio
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)


CLEANUP_INTERVAL = 60  # seconds between sweeps of expired entries


class _InMemoryCache:
    """Simple in-memory TTL cache (fallback when Redis is unavailable).

    Expired entries are swept on the write path, at most once per
    ``cleanup_interval``.
    """

    def __init__(self, cleanup_interval: float = CLEANUP_INTERVAL):
        self._store: dict[str, tuple[float, str]] = {}
        self._lock = asyncio.Lock()
        self._cleanup_interval = cleanup_interval
        self._last_cleanup = time.monotonic()

    def __len__(self) -> int:
        return len(self._store)

    async def put(self, key: str, value: str, ttl: int) -> None:
        async with self._lock:
            now = time.monotonic()
            self._maybe_cleanup(now)
            self._store[key] = (now + ttl, value)

    async def take(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._store.pop(key, None)
            if entry is None:
                return None
            expires_at, value = entry
            if time.monotonic() > expires_at:
                return None
            return value

    def _maybe_cleanup(self, now: float) -> None:
        """Remove expired entries (called under lock)."""
        if now - self._last_cleanup < self._cleanup_interval:
            return
        self._last_cleanup = now
        expired = [k for k, (exp, _) in self._store.items() if now > exp]
        for k in expired:
            del self._store[k]
        if expired:
            logger.debug("Purged %d expired challenge entries", len(expired))

    async def close(self) -> None:
        self._store.clear()


class TransientCache:
    """Expiring store with atomic take: Redis if available, in-memory otherwise."""

    def __init__(self, prefix: str = "loginshield:"):
        self._prefix = prefix
        self._redis = None
        self._fallback = _InMemoryCache()
        self._using_redis = False

    async def connect(self, redis_url: Optional[str] = None) -> bool:
        """Try to connect to Redis. Returns True if successful."""
        if not redis_url:
            logger.info("No REDIS_URL configured, using in-memory challenge cache")
            return False
        try:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
            )
            await self._redis.ping()
            self._using_redis = True
            logger.info("Redis challenge cache connected: %s", redis_url.split("@")[-1])
            return True
        except Exception as e:
            logger.warning("Redis connection failed (%s), using in-memory challenge cache", e)
            self._redis = None
            self._using_redis = False
            return False

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def put(self, key: str, value: str, ttl: int) -> None:
        if self._using_redis:
            try:
                await self._redis.set(self._key(key), value, ex=ttl)
                return
            except Exception as e:
                logger.warning("Redis SET failed for challenge key: %s", e)
        await self._fallback.put(key, value, ttl)

    async def take(self, key: str) -> Optional[str]:
        """Return the value and delete it in one step; None if missing or expired."""
        if self._using_redis:
            try:
                value = await self._redis.getdel(self._key(key))
                if value is not None:
                    return value
            except Exception as e:
                logger.warning("Redis GETDEL failed for challenge key: %s", e)
        return await self._fallback.take(key)

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
        await self._fallback.close()

    @property
    def is_redis(self) -> bool:
        return self._using_redis

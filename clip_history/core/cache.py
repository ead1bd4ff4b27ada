"""Cache for query embeddings, Redis-backed or in-process."""

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

KEY_PREFIX = "clip_history:"


class ClipCache:
    """Cache facade. Errors are logged and reported as misses, never raised."""

    def __init__(self, backend: str = "memory", redis_url: Optional[str] = None):
        self.backend_name = backend
        self.backend = None
        self._initialize_backend(redis_url)

    def _initialize_backend(self, redis_url: Optional[str]):
        if self.backend_name == "redis":
            try:
                self.backend = RedisCache(redis_url or "redis://localhost:6379/0")
                return
            except (redis.RedisError, ValueError) as e:
                logger.warning(f"Redis cache unavailable ({e}), using in-memory cache")
        elif self.backend_name != "memory":
            logger.warning(f"Unknown cache backend {self.backend_name!r}, using in-memory cache")
        self.backend = MemoryCache()

    async def get(self, key: str) -> Optional[Any]:
        try:
            return await self.backend.get(key)
        except Exception as e:
            logger.warning(f"Cache get error: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: int = 3600):
        """Set value in cache with TTL."""
        try:
            await self.backend.set(key, value, ttl)
        except Exception as e:
            logger.warning(f"Cache set error: {e}")

    async def delete(self, key: str):
        try:
            await self.backend.delete(key)
        except Exception as e:
            logger.warning(f"Cache delete error: {e}")

    async def clear(self):
        """Clear all cache entries."""
        try:
            await self.backend.clear()
        except Exception as e:
            logger.warning(f"Cache clear error: {e}")


class RedisCache:
    """Redis-based cache implementation."""

    def __init__(self, url: str):
        self.redis = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        self._connected = None

    async def _ensure_connected(self) -> bool:
        """Ping once; remember the outcome."""
        if self._connected is not None:
            return self._connected

        try:
            await self.redis.ping()
            self._connected = True
        except (redis.RedisError, OSError) as e:
            logger.warning(f"Redis ping failed: {e}")
            self._connected = False
        return self._connected

    async def get(self, key: str) -> Optional[Any]:
        if not await self._ensure_connected():
            return None

        value = await self.redis.get(f"{KEY_PREFIX}{key}")
        return json.loads(value) if value else None

    async def set(self, key: str, value: Any, ttl: int = 3600):
        if not await self._ensure_connected():
            return

        await self.redis.setex(f"{KEY_PREFIX}{key}", ttl, json.dumps(value, default=str))

    async def delete(self, key: str):
        if not await self._ensure_connected():
            return

        await self.redis.delete(f"{KEY_PREFIX}{key}")

    async def clear(self):
        """Clear all clip_history keys."""
        if not await self._ensure_connected():
            return

        keys = await self.redis.keys(f"{KEY_PREFIX}*")
        if keys:
            await self.redis.delete(*keys)


class MemoryCache:
    """In-memory cache with TTL expiry and LRU eviction."""

    def __init__(self, max_size: int = 1000):
        self.cache: Dict[str, Dict[str, Any]] = {}
        self.access_order: Dict[str, float] = {}
        self.max_size = max_size
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self.cache.get(key)
            if entry is None:
                return None

            if time.time() > entry["expires_at"]:
                del self.cache[key]
                del self.access_order[key]
                return None

            self.access_order[key] = time.time()
            return entry["value"]

    async def set(self, key: str, value: Any, ttl: int = 3600):
        """Set in memory cache with TTL and LRU eviction."""
        async with self._lock:
            current_time = time.time()

            if len(self.cache) >= self.max_size * 0.8:
                self._cleanup_expired()

            if key not in self.cache and len(self.cache) >= self.max_size:
                self._evict_lru()

            self.cache[key] = {"value": value, "expires_at": current_time + ttl}
            self.access_order[key] = current_time

    async def delete(self, key: str):
        async with self._lock:
            self.cache.pop(key, None)
            self.access_order.pop(key, None)

    async def clear(self):
        async with self._lock:
            self.cache.clear()
            self.access_order.clear()

    def _cleanup_expired(self):
        current_time = time.time()
        expired_keys = [
            key for key, entry in self.cache.items() if current_time > entry["expires_at"]
        ]

        for key in expired_keys:
            del self.cache[key]
            self.access_order.pop(key, None)

    def _evict_lru(self):
        """Evict the least recently used 20% of entries."""
        if not self.access_order:
            return

        sorted_keys = sorted(self.access_order.items(), key=lambda x: x[1])
        evict_count = max(1, len(sorted_keys) // 5)

        for key, _ in sorted_keys[:evict_count]:
            self.cache.pop(key, None)
            del self.access_order[key]

    def get_stats(self) -> Dict[str, Any]:
        current_time = time.time()
        expired_count = sum(
            1 for entry in self.cache.values() if current_time > entry["expires_at"]
        )

        return {
            "total_entries": len(self.cache),
            "expired_entries": expired_count,
            "active_entries": len(self.cache) - expired_count,
            "max_size": self.max_size,
            "usage_percent": round((len(self.cache) / self.max_size) * 100, 1),
        }

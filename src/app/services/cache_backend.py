"""
Cache Backend Abstraction with Redis Toggle

Redis backend for multi-instance deployments with an in-memory backend for
development and tests. Used for artifact read-through caching and for the
optional distributed generation lock.
"""

import asyncio
import copy
import fnmatch
import json
import os

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from app.core.logging import get_storage_logger

logger = get_storage_logger("cache_backend")


class CacheBackend(ABC):
    """Abstract cache backend interface."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Get value by key."""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int = 300) -> bool:
        """Set key-value with TTL in seconds."""
        pass

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        """Set key only when it does not exist (lock acquisition)."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key."""
        pass

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern."""
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if key exists."""
        pass


class MemoryCacheBackend(CacheBackend):
    """In-memory cache backend for development/single-instance."""

    def __init__(self):
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        logger.info("💾 Memory cache backend initialized")

    def _live_entry(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if entry["expires"] and datetime.now() > entry["expires"]:
            del self._cache[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[Any]:
        """Get value from memory cache."""
        async with self._lock:
            entry = self._live_entry(key)
            return None if entry is None else copy.deepcopy(entry["value"])

    async def set(self, key: str, value: Any, ttl: int = 300) -> bool:
        """Set value in memory cache."""
        async with self._lock:
            expires = datetime.now() + timedelta(seconds=ttl) if ttl > 0 else None
            self._cache[key] = {"value": copy.deepcopy(value), "expires": expires}
            return True

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        async with self._lock:
            if self._live_entry(key) is not None:
                return False
            expires = datetime.now() + timedelta(seconds=ttl) if ttl > 0 else None
            self._cache[key] = {"value": value, "expires": expires}
            return True

    async def delete(self, key: str) -> bool:
        """Delete key from memory cache."""
        async with self._lock:
            if key in self._cache:
                del self._cache[key]
                return True
            return False

    async def delete_pattern(self, pattern: str) -> int:
        async with self._lock:
            doomed = [k for k in self._cache if fnmatch.fnmatchcase(k, pattern)]
            for key in doomed:
                del self._cache[key]
            return len(doomed)

    async def exists(self, key: str) -> bool:
        """Check if key exists in memory cache."""
        value = await self.get(key)  # This handles expiry
        return value is not None


class RedisCacheBackend(CacheBackend):
    """Redis cache backend for production/multi-instance."""

    def __init__(self, redis_url: str = "redis://localhost:6379/0"):
        self.redis_url = redis_url
        self.redis = None
        logger.info(f"🔴 Redis cache backend initialized: {redis_url}")

    async def _ensure_connection(self):
        """Ensure Redis connection is established."""
        if self.redis is None:
            import redis.asyncio as redis

            try:
                self.redis = redis.from_url(self.redis_url, decode_responses=True)
                # Test connection
                await self.redis.ping()
                logger.info("🔴 Redis connection established")
            except Exception as e:
                self.redis = None
                raise RuntimeError(f"Failed to connect to Redis: {e}") from e

    async def get(self, key: str) -> Optional[Any]:
        """Get value from Redis."""
        await self._ensure_connection()
        try:
            value = await self.redis.get(key)
            if value is None:
                return None

            # Try to deserialize JSON
            try:
                return json.loads(value)
            except (json.JSONDecodeError, TypeError):
                return value

        except Exception as e:
            logger.error(f"Redis get error: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: int = 300) -> bool:
        """Set value in Redis."""
        await self._ensure_connection()
        try:
            # Serialize complex types as JSON
            if isinstance(value, (dict, list, bool)) or value is None:
                value = json.dumps(value)
            elif not isinstance(value, (str, int, float)):
                value = str(value)

            await self.redis.set(key, value, ex=ttl if ttl > 0 else None)
            return True

        except Exception as e:
            logger.error(f"Redis set error: {e}")
            return False

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        await self._ensure_connection()
        result = await self.redis.set(key, value, nx=True, ex=ttl)
        return bool(result)

    async def delete(self, key: str) -> bool:
        """Delete key from Redis."""
        await self._ensure_connection()
        try:
            result = await self.redis.delete(key)
            return result > 0
        except Exception as e:
            logger.error(f"Redis delete error: {e}")
            return False

    async def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching pattern using SCAN (never KEYS)."""
        await self._ensure_connection()
        deleted = 0
        try:
            batch = []
            async for key in self.redis.scan_iter(match=pattern, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    deleted += await self.redis.delete(*batch)
                    batch = []
            if batch:
                deleted += await self.redis.delete(*batch)
        except Exception as e:
            logger.error(f"Redis delete_pattern error: {e}")
        return deleted

    async def exists(self, key: str) -> bool:
        """Check if key exists in Redis."""
        await self._ensure_connection()
        try:
            result = await self.redis.exists(key)
            return result > 0
        except Exception as e:
            logger.error(f"Redis exists error: {e}")
            return False

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        """Delete key only while it still holds ``expected`` (lock release)."""
        await self._ensure_connection()
        script = (
            "if redis.call('get', KEYS[1]) == ARGV[1] then "
            "return redis.call('del', KEYS[1]) else return 0 end"
        )
        result = await self.redis.eval(script, 1, key, expected)
        return bool(result)

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None


# Global cache instance
_cache_backend: Optional[CacheBackend] = None


def get_cache_backend() -> CacheBackend:
    """Get the configured cache backend (env-driven toggle)."""
    global _cache_backend

    if _cache_backend is None:
        backend_type = os.getenv("CACHE_BACKEND", "memory").lower()

        if backend_type == "redis":
            redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
            _cache_backend = RedisCacheBackend(redis_url)
            logger.info(f"🔴 Using Redis cache backend: {redis_url}")
        else:
            _cache_backend = MemoryCacheBackend()
            logger.info("💾 Using memory cache backend (development mode)")

    return _cache_backend


def reset_cache_backend() -> None:
    """Drop the global backend (tests and reconfiguration)."""
    global _cache_backend
    _cache_backend = None

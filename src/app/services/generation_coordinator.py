"""
Generation coordinator - per-client run exclusion and endpoint health.

Holds the state a profile run consults before doing work: which clients
have a run in progress and which endpoints are cooling down after a
failure. The lock backend is pluggable; the in-memory backend is a
process-local set, the Redis backend shares locks across replicas on a
best-effort basis (SET NX with expiry, token-checked release).
"""

from __future__ import annotations

import logging
import uuid

from abc import ABC, abstractmethod

from app.core.config import GenerationConfig, get_generation_config
from app.core.errors import ConcurrencyConflictError
from app.services.cache_backend import RedisCacheBackend
from app.services.endpoint_health import EndpointHealthTracker

logger = logging.getLogger(__name__)

LOCK_PREFIX = "profile-lock"


class LockBackend(ABC):
    """Per-client mutual exclusion"""

    @abstractmethod
    async def acquire(self, client_id: str) -> bool:
        pass

    @abstractmethod
    async def release(self, client_id: str) -> None:
        pass

    @abstractmethod
    async def is_held(self, client_id: str) -> bool:
        pass


class InMemoryLockBackend(LockBackend):
    """Process-local membership set"""

    def __init__(self):
        self._held: set[str] = set()

    async def acquire(self, client_id: str) -> bool:
        # No await between check and add, so this is atomic on the event loop
        if client_id in self._held:
            return False
        self._held.add(client_id)
        return True

    async def release(self, client_id: str) -> None:
        self._held.discard(client_id)

    async def is_held(self, client_id: str) -> bool:
        return client_id in self._held

    def held(self) -> set[str]:
        return set(self._held)


class RedisLockBackend(LockBackend):
    """Redis-backed lock shared by every replica using the same Redis"""

    def __init__(self, cache: RedisCacheBackend, ttl_seconds: int = 900):
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self._tokens: dict[str, str] = {}

    @staticmethod
    def _key(client_id: str) -> str:
        return f"{LOCK_PREFIX}:{client_id}"

    async def acquire(self, client_id: str) -> bool:
        token = uuid.uuid4().hex
        if await self.cache.set_if_absent(self._key(client_id), token, self.ttl_seconds):
            self._tokens[client_id] = token
            return True
        return False

    async def release(self, client_id: str) -> None:
        token = self._tokens.pop(client_id, None)
        if token is None:
            return
        released = await self.cache.compare_and_delete(self._key(client_id), token)
        if not released:
            logger.warning(f"Lock for {client_id} expired before release")

    async def is_held(self, client_id: str) -> bool:
        return await self.cache.exists(self._key(client_id))


class GenerationCoordinator:
    """
    Injectable owner of generation locks and endpoint health.

    Args:
        lock_backend: Lock implementation (in-memory by default)
        health: Endpoint circuit breaker
    """

    def __init__(
        self,
        lock_backend: LockBackend | None = None,
        health: EndpointHealthTracker | None = None,
    ):
        self.locks = lock_backend or InMemoryLockBackend()
        self.health = health or EndpointHealthTracker()

    async def try_acquire(self, client_id: str) -> bool:
        acquired = await self.locks.acquire(client_id)
        if acquired:
            logger.debug(f"🔒 Generation lock acquired for {client_id}")
        return acquired

    async def acquire(self, client_id: str) -> None:
        """Like try_acquire, but raises ConcurrencyConflictError when the lock is held"""
        if not await self.try_acquire(client_id):
            raise ConcurrencyConflictError(f"Generation already in progress for {client_id}")

    async def release(self, client_id: str) -> None:
        await self.locks.release(client_id)
        logger.debug(f"🔓 Generation lock released for {client_id}")

    async def is_active(self, client_id: str) -> bool:
        return await self.locks.is_held(client_id)

    @classmethod
    def from_config(cls, config: GenerationConfig | None = None, redis_url: str | None = None) -> "GenerationCoordinator":
        config = config or get_generation_config()
        health = EndpointHealthTracker(cooldown_seconds=config.failure_cooldown_seconds)
        if config.lock_backend == "redis":
            backend = RedisLockBackend(
                RedisCacheBackend(redis_url or "redis://localhost:6379/0"),
                ttl_seconds=config.lock_ttl_seconds,
            )
            logger.info("🔴 Using Redis generation locks")
        else:
            backend = InMemoryLockBackend()
        return cls(lock_backend=backend, health=health)

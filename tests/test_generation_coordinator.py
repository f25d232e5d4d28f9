import asyncio

import pytest

from app.core.config import GenerationConfig
from app.core.errors import ConcurrencyConflictError
from app.services.generation_coordinator import (
    GenerationCoordinator,
    InMemoryLockBackend,
    RedisLockBackend,
)


@pytest.mark.asyncio
async def test_lock_is_exclusive_until_released():
    coordinator = GenerationCoordinator()

    assert await coordinator.try_acquire("client-1")
    assert await coordinator.is_active("client-1")
    assert not await coordinator.try_acquire("client-1")
    # Other clients are independent
    assert await coordinator.try_acquire("client-2")

    await coordinator.release("client-1")
    assert not await coordinator.is_active("client-1")
    assert await coordinator.try_acquire("client-1")


@pytest.mark.asyncio
async def test_acquire_raises_conflict_when_held():
    coordinator = GenerationCoordinator()
    await coordinator.acquire("client-1")

    with pytest.raises(ConcurrencyConflictError) as excinfo:
        await coordinator.acquire("client-1")

    assert excinfo.value.status_code == 409
    await coordinator.release("client-1")
    await coordinator.acquire("client-1")


@pytest.mark.asyncio
async def test_concurrent_acquire_has_single_winner():
    backend = InMemoryLockBackend()
    coordinator = GenerationCoordinator(lock_backend=backend)

    results = await asyncio.gather(*(coordinator.try_acquire("client-1") for _ in range(10)))
    assert results.count(True) == 1
    assert backend.held() == {"client-1"}


def test_from_config_uses_memory_locks_and_cooldown():
    config = GenerationConfig(failure_cooldown_seconds=12.0, lock_backend="memory")
    coordinator = GenerationCoordinator.from_config(config)

    assert isinstance(coordinator.locks, InMemoryLockBackend)
    assert coordinator.health.cooldown_seconds == 12.0


class _FakeRedisCache:
    """Implements the subset of RedisCacheBackend the lock backend uses"""

    def __init__(self):
        self.values: dict[str, str] = {}

    async def set_if_absent(self, key, value, ttl):
        if key in self.values:
            return False
        self.values[key] = value
        return True

    async def compare_and_delete(self, key, expected):
        if self.values.get(key) != expected:
            return False
        del self.values[key]
        return True

    async def exists(self, key):
        return key in self.values


@pytest.mark.asyncio
async def test_redis_lock_release_only_removes_own_token():
    cache = _FakeRedisCache()
    first = RedisLockBackend(cache, ttl_seconds=60)  # type: ignore[arg-type]
    second = RedisLockBackend(cache, ttl_seconds=60)  # type: ignore[arg-type]

    assert await first.acquire("client-1")
    assert not await second.acquire("client-1")
    assert await second.is_held("client-1")

    # Simulate expiry followed by another replica taking the lock
    cache.values.clear()
    assert await second.acquire("client-1")
    await first.release("client-1")
    assert await second.is_held("client-1")

    await second.release("client-1")
    assert not await second.is_held("client-1")

import asyncio

import pytest

from app.models.profile import Artifact
from app.services.cache_backend import MemoryCacheBackend
from app.services.chart_cache import ChartCache
from app.services.chart_repository import InMemoryArtifactRepository
from app.services.singleflight import SingleFlight
from conftest import TENANT


class _SlowRepository(InMemoryArtifactRepository):
    """Delays reads so concurrent misses overlap"""

    def __init__(self, delay: float = 0.05):
        super().__init__()
        self.delay = delay

    async def find_one(self, tenant_id, client_id, artifact_type, system):
        await asyncio.sleep(self.delay)
        return await super().find_one(tenant_id, client_id, artifact_type, system)


class _GatedRepository(InMemoryArtifactRepository):
    """Snapshots the type listing, then waits until released"""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def list_types(self, tenant_id, client_id, system):
        types = await super().list_types(tenant_id, client_id, system)
        self.entered.set()
        await self.release.wait()
        return types


def _artifact(artifact_type: str = "D9", system: str = "lahiri", payload=None) -> Artifact:
    return Artifact(
        tenant_id=TENANT,
        client_id="client-1",
        artifact_type=artifact_type,
        system=system,
        payload=payload if payload is not None else {"houses": list(range(12))},
    )


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_repository_read():
    repo = _SlowRepository()
    await repo.upsert(_artifact())
    repo.reads = 0
    cache = ChartCache(repo, backend=MemoryCacheBackend())

    results = await asyncio.gather(
        *(cache.find_one(TENANT, "client-1", "D9", "lahiri") for _ in range(5))
    )

    assert repo.reads == 1
    assert all(r.payload == {"houses": list(range(12))} for r in results)
    assert cache.stats()["coalesced"] == 4


@pytest.mark.asyncio
async def test_second_read_is_served_from_cache(chart_cache, artifacts):
    await artifacts.upsert(_artifact())
    artifacts.reads = 0

    await chart_cache.find_one(TENANT, "client-1", "D9", "lahiri")
    await chart_cache.find_one(TENANT, "client-1", "D9", "lahiri")

    assert artifacts.reads == 1
    assert chart_cache.stats()["hits"] == 1


@pytest.mark.asyncio
async def test_upsert_invalidates_all_client_entries(chart_cache, artifacts):
    await chart_cache.upsert(_artifact("D1"))
    assert await chart_cache.existing_types(TENANT, "client-1", "lahiri") == ["D1"]
    listed = await chart_cache.find_by_client(TENANT, "client-1")
    assert len(listed) == 1

    await chart_cache.create(_artifact("D9"))

    assert sorted(await chart_cache.existing_types(TENANT, "client-1", "lahiri")) == ["D1", "D9"]
    assert len(await chart_cache.find_by_client(TENANT, "client-1")) == 2


@pytest.mark.asyncio
async def test_update_replaces_payload_for_identity_key(chart_cache):
    await chart_cache.upsert(_artifact(payload={"v": 1}))
    assert (await chart_cache.find_one(TENANT, "client-1", "D9", "lahiri")).payload == {"v": 1}

    await chart_cache.update(_artifact(payload={"v": 2}))
    assert (await chart_cache.find_one(TENANT, "client-1", "d9", "LAHIRI")).payload == {"v": 2}


@pytest.mark.asyncio
async def test_missing_artifact_is_not_cached(chart_cache, artifacts):
    assert await chart_cache.find_one(TENANT, "client-1", "D10", "lahiri") is None
    assert await chart_cache.find_one(TENANT, "client-1", "D10", "lahiri") is None
    assert artifacts.reads == 2


@pytest.mark.asyncio
async def test_other_clients_keep_their_entries():
    backend = MemoryCacheBackend()
    repo = InMemoryArtifactRepository()
    cache = ChartCache(repo, backend=backend)
    other = Artifact(TENANT, "client-2", "D1", "lahiri", {"x": 1})
    await cache.upsert(other)
    await cache.find_one(TENANT, "client-2", "D1", "lahiri")

    await cache.upsert(_artifact())

    assert await backend.exists(f"charts:{TENANT}:client-2:one:lahiri:d1")


@pytest.mark.asyncio
async def test_singleflight_propagates_failure_to_all_waiters():
    flight = SingleFlight()
    calls = 0

    async def loader():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.02)
        raise RuntimeError("origin down")

    results = await asyncio.gather(
        *(flight.do("k", loader) for _ in range(3)), return_exceptions=True
    )

    assert calls == 1
    assert all(isinstance(r, RuntimeError) for r in results)
    assert not flight.in_flight("k")


@pytest.mark.asyncio
async def test_load_in_flight_during_write_is_not_cached():
    repo = _GatedRepository()
    cache = ChartCache(repo, backend=MemoryCacheBackend())

    stale = asyncio.create_task(cache.existing_types(TENANT, "client-1", "lahiri"))
    await repo.entered.wait()
    await cache.upsert(_artifact("D1"))
    # Arrives after the write, so it must not join the older load
    fresh = asyncio.create_task(cache.existing_types(TENANT, "client-1", "lahiri"))
    await asyncio.sleep(0)
    repo.release.set()

    assert await stale == []
    assert await fresh == ["D1"]

    reads = repo.reads
    assert await cache.existing_types(TENANT, "client-1", "lahiri") == ["D1"]
    assert repo.reads == reads

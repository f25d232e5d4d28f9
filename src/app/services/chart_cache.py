"""
Chart Cache - cache-aside artifact access with request coalescing.

Reads go to the distributed cache first and fall through to the
repository on a miss; concurrent misses for the same key share a single
repository fetch. Every write upserts the row and drops all cached entries
of the affected client; loads that were in flight during the write still
answer their callers but are not cached.
"""

import logging

from typing import Any, Optional

from prometheus_client import Counter

from app.models.profile import Artifact
from app.services.cache_backend import CacheBackend, get_cache_backend
from app.services.chart_repository import ArtifactRepository
from app.services.singleflight import SingleFlight

logger = logging.getLogger(__name__)

KEY_PREFIX = "charts"

chart_cache_hits_total = Counter(
    "profile_chart_cache_hits_total", "Artifact cache hits", ["operation"]
)
chart_cache_misses_total = Counter(
    "profile_chart_cache_misses_total", "Artifact cache misses", ["operation"]
)
chart_cache_coalesced_total = Counter(
    "profile_chart_cache_coalesced_total", "Cache misses served by an in-flight fetch"
)


def client_key_prefix(tenant_id: str, client_id: str) -> str:
    return f"{KEY_PREFIX}:{tenant_id}:{client_id}"


class ChartCache:
    """
    Artifact access layer used by generators and the dasha resolver.

    Args:
        repository: Persistent artifact store (origin)
        backend: Distributed cache; defaults to the configured global backend
        ttl_seconds: Lifetime of cached reads
    """

    def __init__(
        self,
        repository: ArtifactRepository,
        backend: Optional[CacheBackend] = None,
        ttl_seconds: int = 300,
    ):
        self.repository = repository
        self.backend = backend or get_cache_backend()
        self.ttl_seconds = ttl_seconds
        self._flight = SingleFlight()
        # Bumped by every invalidation; loads started under an older value are not cached
        self._generations: dict[str, int] = {}
        self.hits = 0
        self.misses = 0

    async def _read_through(self, operation: str, scope: str, key: str, loader) -> Any:
        cached = await self.backend.get(key)
        if cached is not None:
            self.hits += 1
            chart_cache_hits_total.labels(operation=operation).inc()
            return cached

        self.misses += 1
        chart_cache_misses_total.labels(operation=operation).inc()
        generation = self._generations.get(scope, 0)
        flight_key = f"{key}#{generation}"
        if self._flight.in_flight(flight_key):
            chart_cache_coalesced_total.inc()

        async def load():
            value = await loader()
            if value is None:
                return value
            if self._generations.get(scope, 0) != generation:
                logger.debug(f"Discarding cache fill for {key}: client written during load")
            else:
                await self.backend.set(key, value, ttl=self.ttl_seconds)
            return value

        return await self._flight.do(flight_key, load)

    async def find_one(
        self, tenant_id: str, client_id: str, artifact_type: str, system: str
    ) -> Optional[Artifact]:
        scope = client_key_prefix(tenant_id, client_id)
        key = f"{scope}:one:{system.lower()}:{artifact_type.lower()}"

        async def load():
            artifact = await self.repository.find_one(tenant_id, client_id, artifact_type, system)
            return None if artifact is None else artifact.to_dict()

        data = await self._read_through("find_one", scope, key, load)
        return None if data is None else Artifact.from_dict(data)

    async def find_by_client(
        self,
        tenant_id: str,
        client_id: str,
        artifact_type: str | None = None,
        system: str | None = None,
    ) -> list[Artifact]:
        type_part = artifact_type.lower() if artifact_type else "_all"
        system_part = system.lower() if system else "_all"
        scope = client_key_prefix(tenant_id, client_id)
        key = f"{scope}:list:{system_part}:{type_part}"

        async def load():
            artifacts = await self.repository.find_by_client(
                tenant_id, client_id, artifact_type=artifact_type, system=system
            )
            return [a.to_dict() for a in artifacts]

        data = await self._read_through("find_by_client", scope, key, load)
        return [Artifact.from_dict(item) for item in data or []]

    async def existing_types(self, tenant_id: str, client_id: str, system: str) -> list[str]:
        """Artifact types already persisted for (client, system)"""
        scope = client_key_prefix(tenant_id, client_id)
        key = f"{scope}:types:{system.lower()}"

        async def load():
            return await self.repository.list_types(tenant_id, client_id, system)

        return list(await self._read_through("existing_types", scope, key, load) or [])

    async def upsert(self, artifact: Artifact) -> Artifact:
        """Insert or replace the row for the artifact's identity key"""
        saved = await self.repository.upsert(artifact)
        await self.invalidate_client(artifact.tenant_id, artifact.client_id)
        return saved

    # Creation and update share upsert semantics on the identity key
    create = upsert
    update = upsert

    async def invalidate_client(self, tenant_id: str, client_id: str) -> int:
        scope = client_key_prefix(tenant_id, client_id)
        self._generations[scope] = self._generations.get(scope, 0) + 1
        deleted = await self.backend.delete_pattern(f"{scope}:*")
        logger.debug(f"Invalidated {deleted} cache entries for client {client_id}")
        return deleted

    def stats(self) -> dict[str, Any]:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "coalesced": self._flight.coalesced,
            "hit_rate": round(self.hits / total, 3) if total else 0.0,
        }

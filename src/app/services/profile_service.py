"""
Profile service wiring.

Assembles repositories, cache, calculation client, resolver and
orchestrator from the environment. PostgreSQL repositories are used when
DATABASE_URL is set, in-memory ones otherwise.
"""

import logging

from dataclasses import dataclass
from typing import Optional

from app.core.config import ServiceConfig, get_service_config
from app.services.artifact_generators import ArtifactGeneratorRouter
from app.services.astro_client import AstroEngineClient
from app.services.cache_backend import MemoryCacheBackend, RedisCacheBackend
from app.services.chart_cache import ChartCache
from app.services.chart_repository import (
    ArtifactRepository,
    InMemoryArtifactRepository,
    PostgresArtifactRepository,
)
from app.services.client_repository import (
    ClientRepository,
    InMemoryClientRepository,
    PostgresClientRepository,
)
from app.services.dasha_resolver import DashaResolver
from app.services.generation_coordinator import GenerationCoordinator
from app.services.profile_orchestrator import ProfileOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class ProfileServices:
    config: ServiceConfig
    clients: ClientRepository
    artifacts: ArtifactRepository
    cache: ChartCache
    astro: AstroEngineClient
    resolver: DashaResolver
    coordinator: GenerationCoordinator
    orchestrator: ProfileOrchestrator

    async def aclose(self) -> None:
        await self.astro.aclose()
        for resource in (self.clients, self.artifacts, self.cache.backend):
            close = getattr(resource, "close", None)
            if close is not None:
                await close()


def build_profile_services(config: ServiceConfig | None = None) -> ProfileServices:
    """Create the full service graph from configuration"""
    config = config or get_service_config()
    storage = config.storage

    if storage.database_url:
        clients: ClientRepository = PostgresClientRepository(storage.database_url)
        artifacts: ArtifactRepository = PostgresArtifactRepository(
            storage.database_url, compression_threshold=storage.compression_threshold_bytes
        )
        logger.info("Using PostgreSQL repositories")
    else:
        clients = InMemoryClientRepository()
        artifacts = InMemoryArtifactRepository(storage.compression_threshold_bytes)
        logger.info("Using in-memory repositories (development mode)")

    if storage.cache_backend == "redis":
        backend = RedisCacheBackend(storage.redis_url)
    else:
        backend = MemoryCacheBackend()

    cache = ChartCache(artifacts, backend=backend, ttl_seconds=storage.cache_ttl_seconds)
    astro = AstroEngineClient(
        config.astro_engine, default_offset_hours=config.generation.default_utc_offset_hours
    )
    resolver = DashaResolver(clients, cache, astro, min_depth=config.generation.dasha_min_depth)
    coordinator = GenerationCoordinator.from_config(config.generation, redis_url=storage.redis_url)
    router = ArtifactGeneratorRouter(astro, cache, resolver)
    orchestrator = ProfileOrchestrator(
        clients, cache, router, coordinator, config=config.generation
    )
    return ProfileServices(
        config=config,
        clients=clients,
        artifacts=artifacts,
        cache=cache,
        astro=astro,
        resolver=resolver,
        coordinator=coordinator,
        orchestrator=orchestrator,
    )


_services: Optional[ProfileServices] = None


def get_profile_services() -> ProfileServices:
    """Get the process-wide service graph (created on first use)"""
    global _services
    if _services is None:
        _services = build_profile_services()
    return _services

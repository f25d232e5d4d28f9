#!/usr/bin/env python3
"""
Dasha Resolver - Vimshottari period lookup along a drill-down path.

Resolution order:
1. Stored tree (through ChartCache), deepened and re-persisted when the
   depth policy is not yet met
2. Calculation service for the top-level tree
3. Fetched nested children along the requested path
4. Local subdivision from the last matched ancestor once fetched data runs out

Identical birth data and path always give identical period boundaries,
whichever of these sources satisfied the request.
"""

import logging
import time

from datetime import datetime
from typing import Any

from prometheus_client import Counter, Histogram

from app.core.errors import NotFoundError, UpstreamFormatError, ValidationError
from app.models.profile import Artifact, BirthContext, ResolvedPeriods
from app.services.astro_client import AstroEngineClient
from app.services.chart_cache import ChartCache
from app.services.client_repository import ClientRepository
from constants.capabilities import VIMSHOTTARI_TYPE
from refactor.dasha import DASHA_LEVELS, Period, canonical_planet, same_planet, subdivide
from refactor.dasha_tree import (
    DEFAULT_MIN_DEPTH,
    ORIGIN_CALCULATED,
    PathNode,
    PeriodArena,
    balance,
    extract_active_path,
)

logger = logging.getLogger(__name__)

# Ancestors a drill-down path may name (maha, antar, pratyantar, sookshma)
MAX_CONTEXT_DEPTH = 4

SOURCE_CACHE = "cache"
SOURCE_EXTERNAL = "external"
SOURCE_CALCULATED = "calculated"

VALID_LEVELS = {"tree"} | set(DASHA_LEVELS.values())

dasha_resolutions_total = Counter(
    "profile_dasha_resolutions_total",
    "Dasha resolutions by source",
    ["system", "source"],
)
dasha_resolve_seconds = Histogram(
    "profile_dasha_resolve_seconds",
    "Dasha resolution time in seconds",
    ["system"],
)


class DashaResolver:
    """
    Resolves Vimshottari periods for a client and calculation system.

    Args:
        clients: Client data provider
        cache: Artifact access layer
        astro: Calculation service client
        min_depth: Default tree depth for branches off the active/target path
    """

    def __init__(
        self,
        clients: ClientRepository,
        cache: ChartCache,
        astro: AstroEngineClient,
        min_depth: int = DEFAULT_MIN_DEPTH,
    ):
        self.clients = clients
        self.cache = cache
        self.astro = astro
        self.min_depth = min_depth

    @staticmethod
    def normalize_path(context_path) -> tuple[str, ...]:
        """Validate and canonicalize a drill-down path"""
        path = tuple(context_path or ())
        if len(path) > MAX_CONTEXT_DEPTH:
            raise ValidationError(
                f"Context path has {len(path)} levels; at most {MAX_CONTEXT_DEPTH} allowed"
            )
        canonical = []
        for lord in path:
            name = canonical_planet(lord)
            if name is None:
                raise ValidationError(f"Unknown period lord '{lord}'")
            canonical.append(name)
        return tuple(canonical)

    async def birth_context(self, tenant_id: str, client_id: str, system: str) -> BirthContext:
        client = await self.clients.get(tenant_id, client_id)
        if client is None:
            raise NotFoundError(f"Client {client_id} not found")
        return BirthContext.from_client(client, system)

    async def resolve(
        self,
        tenant_id: str,
        client_id: str,
        system: str,
        level: str = "tree",
        context_path=(),
        now: datetime | None = None,
    ) -> ResolvedPeriods:
        """
        Resolve the periods below ``context_path``.

        Args:
            tenant_id: Tenant scope
            client_id: Client whose birth data is used
            system: Ayanamsa system
            level: "tree" or a level name, forwarded to the calculation service
            context_path: Up to four ancestor lords; empty for the top level
            now: Reference instant for active-branch expansion

        Returns:
            ResolvedPeriods with the period dicts and where they came from

        Raises:
            ValidationError: bad path, level or incomplete birth data (no network call made)
            NotFoundError: unknown client, or first path lord absent from the tree
        """
        if level not in VALID_LEVELS:
            raise ValidationError(f"Unknown dasha level '{level}'")
        path = self.normalize_path(context_path)
        system = system.lower()
        birth = await self.birth_context(tenant_id, client_id, system)

        started = time.perf_counter()
        arena, source = await self._load_tree(tenant_id, client_id, birth, level, path, now)
        periods, calculated = self._descend(arena, path)
        if calculated:
            source = SOURCE_CALCULATED

        dasha_resolutions_total.labels(system=system, source=source).inc()
        dasha_resolve_seconds.labels(system=system).observe(time.perf_counter() - started)
        logger.info(
            f"Dasha resolved for {client_id} ({system}) path={list(path)} source={source} periods={len(periods)}"
        )
        return ResolvedPeriods(periods=periods, source=source)

    async def active_path(
        self, tenant_id: str, client_id: str, system: str, now: datetime | None = None
    ) -> list[PathNode]:
        """Currently running period at each level, for "where are we now" summaries"""
        system = system.lower()
        birth = await self.birth_context(tenant_id, client_id, system)
        arena, _ = await self._load_tree(tenant_id, client_id, birth, "tree", (), now)
        return extract_active_path(arena, now)

    async def _load_tree(
        self,
        tenant_id: str,
        client_id: str,
        birth: BirthContext,
        level: str,
        path: tuple[str, ...],
        now: datetime | None,
    ) -> tuple[PeriodArena, str]:
        system = birth.system
        artifact = await self.cache.find_one(tenant_id, client_id, VIMSHOTTARI_TYPE, system)
        if artifact is not None:
            try:
                arena = PeriodArena.from_payload(artifact.payload)
            except UpstreamFormatError as e:
                logger.warning(f"Stored dasha tree for {client_id} ({system}) unreadable, refetching: {e}")
            else:
                if balance(arena, self.min_depth, path, now):
                    await self._persist(tenant_id, client_id, system, arena, artifact.calculated_at)
                return arena, SOURCE_CACHE

        request_level = "mahadasha" if level == "tree" else level
        result = await self.astro.vimshottari_dasha(birth, level=request_level, context_path=path)
        arena = PeriodArena.from_payload(result.data)
        if not path:
            balance(arena, self.min_depth, (), now)
            await self._persist(tenant_id, client_id, system, arena, result.calculated_at)
        return arena, SOURCE_EXTERNAL

    async def _persist(
        self,
        tenant_id: str,
        client_id: str,
        system: str,
        arena: PeriodArena,
        calculated_at: datetime | None,
    ) -> None:
        payload = arena.to_payload()
        payload.setdefault("system", system)
        await self.cache.upsert(
            Artifact(
                tenant_id=tenant_id,
                client_id=client_id,
                artifact_type=VIMSHOTTARI_TYPE,
                system=system,
                payload=payload,
                calculated_at=calculated_at,
                metadata={"level": "tree", "depth": arena.depth(), "nodes": len(arena)},
            )
        )

    def _descend(self, arena: PeriodArena, path: tuple[str, ...]) -> tuple[list[dict[str, Any]], bool]:
        """Walk ``path`` through the arena, calculating once fetched data stops.

        Returns the children of the last path element (or the roots for an
        empty path) and whether they were calculated locally.
        """
        if not path:
            return arena.period_dicts(arena.roots), False

        parent_index: int | None = None
        calculated_parent: Period | None = None

        for depth, lord in enumerate(path):
            if calculated_parent is None:
                index = arena.find_child(parent_index, lord)
                if index is not None:
                    parent_index = index
                    continue
                if parent_index is None:
                    raise NotFoundError(f"Period lord {lord} not found at the top level")
                node = arena.nodes[parent_index]
                logger.debug(
                    f"Fetched data ends below {node.planet} (level {node.level}); calculating {lord}"
                )
                candidates = subdivide(node.planet, node.start, node.duration_years, node.end)
            else:
                candidates = subdivide(
                    calculated_parent.planet,
                    calculated_parent.start,
                    calculated_parent.duration_years,
                    calculated_parent.end,
                )

            calculated_parent = next((p for p in candidates if same_planet(p.planet, lord)), None)
            if calculated_parent is None:
                raise NotFoundError(f"Period lord {lord} not found at level {depth + 1}")

        if calculated_parent is not None:
            children = subdivide(
                calculated_parent.planet,
                calculated_parent.start,
                calculated_parent.duration_years,
                calculated_parent.end,
            )
            return [child.to_dict() for child in children], True

        node = arena.nodes[parent_index]
        if node.children:
            calculated = any(
                arena.nodes[child].origin == ORIGIN_CALCULATED for child in node.children
            )
            return arena.period_dicts(node.children, nested=False), calculated

        children = subdivide(node.planet, node.start, node.duration_years, node.end)
        return [child.to_dict() for child in children], True

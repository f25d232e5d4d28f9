"""
Artifact generators - route an artifact type to the call that produces it.

Routing is by normalized type prefix:
- ``D<n>``: natal chart (D1) or divisional chart
- ``dasha_vimshottari``: Vimshottari tree via the DashaResolver
- other ``dasha_*``: alternative period systems
- ``ashtakavarga_*``: bhinna / sarva / shodasha ashtakavarga
- ``yoga:*`` / ``dosha:*``: presence analyses
- KP chart names: KP endpoints
- anything else: special charts
"""

from __future__ import annotations

import logging
import re

from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from app.models.profile import Artifact, BirthContext
from app.services.astro_client import KP_ROUTES, AstroEngineClient, CalculationResult
from app.services.chart_cache import ChartCache
from app.services.dasha_resolver import DashaResolver
from constants.capabilities import (
    DASHA_PREFIX,
    DOSHA_PREFIX,
    VIMSHOTTARI_TYPE,
    YOGA_PREFIX,
    normalize_artifact_type,
)

logger = logging.getLogger(__name__)

_DIVISIONAL_RE = re.compile(r"^d(\d+)$")
_ASHTAKAVARGA_PREFIX = "ashtakavarga_"

KIND_NATAL = "natal"
KIND_DIVISIONAL = "divisional"
KIND_VIMSHOTTARI = "vimshottari"
KIND_ALT_DASHA = "alternative_dasha"
KIND_ASHTAKAVARGA = "ashtakavarga"
KIND_YOGA = "yoga"
KIND_DOSHA = "dosha"
KIND_KP = "kp"
KIND_SPECIAL = "special"


@dataclass
class GenerationTask:
    """One unit of work in a profile run"""

    system: str
    artifact_type: str
    kind: str
    run: Callable[[], Awaitable[Any]]

    @property
    def label(self) -> str:
        return f"{self.system}:{self.artifact_type}"


def classify_artifact_type(artifact_type: str) -> str:
    """Generator kind for an artifact type"""
    raw = artifact_type.strip().lower()
    if _DIVISIONAL_RE.match(raw):
        return KIND_NATAL if raw == "d1" else KIND_DIVISIONAL
    if normalize_artifact_type(raw) == normalize_artifact_type(VIMSHOTTARI_TYPE):
        return KIND_VIMSHOTTARI
    if raw.startswith(DASHA_PREFIX):
        return KIND_ALT_DASHA
    if raw.startswith(_ASHTAKAVARGA_PREFIX):
        return KIND_ASHTAKAVARGA
    if raw.startswith(YOGA_PREFIX):
        return KIND_YOGA
    if raw.startswith(DOSHA_PREFIX):
        return KIND_DOSHA
    if raw in KP_ROUTES:
        return KIND_KP
    return KIND_SPECIAL


class ArtifactGeneratorRouter:
    """Builds generation tasks that fetch an artifact and persist it"""

    def __init__(self, astro: AstroEngineClient, cache: ChartCache, resolver: DashaResolver):
        self.astro = astro
        self.cache = cache
        self.resolver = resolver

    def build_task(
        self, tenant_id: str, client_id: str, birth: BirthContext, artifact_type: str
    ) -> GenerationTask:
        kind = classify_artifact_type(artifact_type)

        async def run() -> Any:
            if kind == KIND_VIMSHOTTARI:
                # The resolver persists the balanced tree itself
                return await self.resolver.resolve(tenant_id, client_id, birth.system)
            result = await self._fetch(kind, birth, artifact_type)
            return await self._save(tenant_id, client_id, birth.system, artifact_type, kind, result)

        return GenerationTask(system=birth.system, artifact_type=artifact_type, kind=kind, run=run)

    async def _fetch(self, kind: str, birth: BirthContext, artifact_type: str) -> CalculationResult:
        raw = artifact_type.strip().lower()
        if kind == KIND_NATAL:
            return await self.astro.natal_chart(birth)
        if kind == KIND_DIVISIONAL:
            return await self.astro.divisional_chart(birth, raw)
        if kind == KIND_ALT_DASHA:
            return await self.astro.other_dasha(birth, raw[len(DASHA_PREFIX):])
        if kind == KIND_ASHTAKAVARGA:
            return await self.astro.ashtakavarga(birth, raw[len(_ASHTAKAVARGA_PREFIX):])
        if kind == KIND_YOGA:
            return await self.astro.yoga_analysis(birth, raw[len(YOGA_PREFIX):])
        if kind == KIND_DOSHA:
            return await self.astro.dosha_analysis(birth, raw[len(DOSHA_PREFIX):])
        if kind == KIND_KP:
            return await self.astro.kp_chart(birth, raw)
        return await self.astro.special_chart(birth, raw)

    async def _save(
        self,
        tenant_id: str,
        client_id: str,
        system: str,
        artifact_type: str,
        kind: str,
        result: CalculationResult,
    ) -> Artifact:
        artifact = Artifact(
            tenant_id=tenant_id,
            client_id=client_id,
            artifact_type=artifact_type,
            system=system,
            payload=result.data,
            calculated_at=result.calculated_at,
            metadata={"kind": kind, "upstream_cached": result.cached},
        )
        saved = await self.cache.upsert(artifact)
        logger.debug(f"Saved {system}:{artifact_type} for client {client_id}")
        return saved

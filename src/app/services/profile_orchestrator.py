#!/usr/bin/env python3
"""
Profile Orchestrator - idempotent full-profile generation per client.

A run takes the client's generation lock, diffs each system's expected
artifact catalog against what is already stored, and generates only the
missing artifacts in rate-limited batches. Endpoints that failed recently
are skipped; new not-found/server failures put an endpoint on cooldown.

Features:
- Safe to call repeatedly: a complete client dispatches nothing
- Partial failures still complete the run; the next run resumes the gaps
- Fire-and-forget trigger for opportunistic generation on client reads
- Recovery of runs abandoned in "processing" by a crashed process
"""

import asyncio
import time

from datetime import UTC, datetime, timedelta

from prometheus_client import Counter, Histogram

from app.core.config import GenerationConfig, get_generation_config
from app.core.errors import (
    ConcurrencyConflictError,
    NotFoundError,
    UpstreamUnavailableError,
    ValidationError,
    is_endpoint_failure,
)
from app.core.logging import get_profile_logger
from app.models.profile import (
    BirthContext,
    ClientRecord,
    GenerationStatus,
    ProfileRunResult,
)
from app.services.artifact_generators import ArtifactGeneratorRouter, GenerationTask
from app.services.batch_dispatcher import BatchDispatcher
from app.services.chart_cache import ChartCache
from app.services.client_repository import ClientRepository
from app.services.generation_coordinator import GenerationCoordinator
from constants.capabilities import canonical_artifact_type, expected_catalog, missing_artifacts

logger = get_profile_logger("orchestrator")

profile_runs_total = Counter(
    "profile_generation_runs_total", "Profile generation runs", ["outcome"]
)
profile_run_seconds = Histogram(
    "profile_generation_run_seconds", "Profile generation run duration in seconds"
)
profile_tasks_total = Counter(
    "profile_generation_tasks_total",
    "Artifact generation tasks",
    ["system", "kind", "outcome"],
)


class ProfileOrchestrator:
    """
    Top-level profile generator.

    Args:
        clients: Client data provider and status store
        cache: Artifact access layer (existing-type audits)
        router: Builds one generation task per missing artifact type
        coordinator: Generation locks and endpoint health
        dispatcher: Batch runner (defaults from configuration)
        config: Generation settings
    """

    def __init__(
        self,
        clients: ClientRepository,
        cache: ChartCache,
        router: ArtifactGeneratorRouter,
        coordinator: GenerationCoordinator,
        dispatcher: BatchDispatcher | None = None,
        config: GenerationConfig | None = None,
    ):
        self.clients = clients
        self.cache = cache
        self.router = router
        self.coordinator = coordinator
        self.config = config or get_generation_config()
        self.dispatcher = dispatcher or BatchDispatcher(
            concurrency=self.config.batch_concurrency,
            inter_task_delay=self.config.inter_task_delay_seconds,
        )
        self._background: set[asyncio.Task] = set()

    # --- Audits ---

    async def missing_by_system(self, tenant_id: str, client_id: str) -> dict[str, list[str]]:
        """Missing artifact types per configured system"""
        missing = {}
        for system in self.config.systems:
            existing = await self.cache.existing_types(tenant_id, client_id, system)
            missing[system] = missing_artifacts(expected_catalog(system), existing)
        return missing

    def _is_stale(self, client: ClientRecord) -> bool:
        if client.generation_status != GenerationStatus.PROCESSING:
            return False
        if client.status_updated_at is None:
            return True
        age = datetime.now(UTC) - client.status_updated_at
        return age > timedelta(seconds=self.config.stale_processing_after_seconds)

    async def _load_client(self, tenant_id: str, client_id: str) -> ClientRecord:
        client = await self.clients.get(tenant_id, client_id)
        if client is None:
            raise NotFoundError(f"Client {client_id} not found")
        if not client.has_birth_details():
            raise ValidationError(f"Client {client_id} birth details incomplete")
        return client

    # --- Triggers ---

    async def ensure_profile(self, tenant_id: str, client_id: str) -> bool:
        """
        Schedule a background run when the client's profile has gaps.

        No-op while a run holds the client's lock. Never raises.

        Returns:
            True when a background run was scheduled
        """
        if await self.coordinator.is_active(client_id):
            logger.debug(f"Profile run already active for {client_id}; ensure is a no-op")
            return False

        try:
            client = await self.clients.get(tenant_id, client_id)
            if client is None or not client.has_birth_details():
                return False
            if client.generation_status == GenerationStatus.PROCESSING and not self._is_stale(client):
                return False

            missing = await self.missing_by_system(tenant_id, client_id)
            total_missing = sum(len(types) for types in missing.values())
            if total_missing == 0 and client.generation_status != GenerationStatus.FAILED:
                return False
        except Exception as e:
            logger.warning(f"Failed to perform automatic profile audit for {client_id}: {e}")
            return False

        logger.info(
            f"Profile for {client_id} incomplete ({total_missing} missing); scheduling generation"
        )
        task = asyncio.create_task(self._background_run(tenant_id, client_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return True

    async def _background_run(self, tenant_id: str, client_id: str) -> None:
        try:
            await self.generate_profile(tenant_id, client_id)
        except Exception:
            logger.exception(f"Background profile generation failed for {client_id}")

    async def wait_for_background(self) -> None:
        """Wait for scheduled background runs (shutdown and tests)"""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # --- Generation ---

    async def generate_profile(self, tenant_id: str, client_id: str) -> ProfileRunResult:
        """
        Generate every missing artifact of the client's profile.

        Returns:
            ProfileRunResult; ``skipped_run`` is set when another run held the lock

        Raises:
            NotFoundError / ValidationError: unknown client or incomplete birth data
            Any exception escaping the per-system loop, after marking the run failed
        """
        if await self.coordinator.is_active(client_id):
            return ProfileRunResult(status=GenerationStatus.PROCESSING, skipped_run=True)

        client = await self._load_client(tenant_id, client_id)

        try:
            await self.coordinator.acquire(client_id)
        except ConcurrencyConflictError:
            logger.info(f"Generation already running for {client_id}, skipping")
            return ProfileRunResult(status=GenerationStatus.PROCESSING, skipped_run=True)

        started = time.perf_counter()
        result = ProfileRunResult(status=GenerationStatus.PROCESSING)
        try:
            await self.clients.set_generation_status(tenant_id, client_id, GenerationStatus.PROCESSING)

            for system in self.config.systems:
                await self._generate_system(tenant_id, client, system, result)

            await self.clients.set_generation_status(
                tenant_id, client_id, GenerationStatus.COMPLETED, bump_version=True
            )
            result.status = GenerationStatus.COMPLETED
            profile_runs_total.labels(outcome="completed").inc()
        except Exception:
            result.status = GenerationStatus.FAILED
            profile_runs_total.labels(outcome="failed").inc()
            logger.exception(f"❌ Profile generation failed for {client_id}")
            try:
                await self.clients.set_generation_status(tenant_id, client_id, GenerationStatus.FAILED)
            except Exception as status_error:
                logger.error(f"Could not record failed status for {client_id}: {status_error}")
            raise
        finally:
            await self.coordinator.release(client_id)
            result.duration_ms = (time.perf_counter() - started) * 1000
            profile_run_seconds.observe(result.duration_ms / 1000)

        logger.info(
            f"✅ Profile generation for {client_id} completed in {result.duration_ms:.0f}ms: "
            f"generated={result.generated} failed={result.failed} skipped={result.skipped} "
            f"missing={result.per_system_missing_counts}"
        )
        return result

    async def _generate_system(
        self, tenant_id: str, client: ClientRecord, system: str, result: ProfileRunResult
    ) -> None:
        existing = await self.cache.existing_types(tenant_id, client.client_id, system)
        missing = missing_artifacts(expected_catalog(system), existing)
        result.per_system_missing_counts[system] = len(missing)
        if not missing:
            return

        birth = BirthContext.from_client(client, system)
        health = self.coordinator.health
        tasks: list[GenerationTask] = []
        for artifact_type in missing:
            if health.should_skip(system, artifact_type):
                result.skipped += 1
                profile_tasks_total.labels(system=system, kind="-", outcome="skipped").inc()
                continue
            tasks.append(self.router.build_task(tenant_id, client.client_id, birth, artifact_type))

        logger.info(
            f"Generating {len(tasks)} of {len(missing)} missing {system} artifacts for {client.client_id}"
        )

        def on_failure(task: GenerationTask, exc: Exception) -> None:
            profile_tasks_total.labels(system=task.system, kind=task.kind, outcome="failed").inc()
            if is_endpoint_failure(exc):
                health.mark_failed(task.system, task.artifact_type)

        report = await self.dispatcher.run(tasks, on_failure=on_failure)
        result.generated += len(report.succeeded)
        result.failed += len(report.failed)
        for task in tasks:
            if task.label in report.succeeded:
                profile_tasks_total.labels(system=task.system, kind=task.kind, outcome="ok").inc()

    async def generate_artifact(
        self, tenant_id: str, client_id: str, system: str, artifact_type: str, force: bool = False
    ):
        """
        Generate a single artifact on demand.

        Args:
            force: Clear any endpoint cooldown before trying
        """
        system = system.lower()
        requested = artifact_type
        artifact_type = canonical_artifact_type(system, requested)
        if artifact_type is None:
            raise ValidationError(f"Artifact type {requested} is not available for {system}")

        client = await self._load_client(tenant_id, client_id)
        health = self.coordinator.health
        if force:
            health.clear_failure(system, artifact_type)
        elif health.should_skip(system, artifact_type):
            raise UpstreamUnavailableError(
                f"Endpoint {system}:{artifact_type} is cooling down after a failure"
            )

        task = self.router.build_task(
            tenant_id, client_id, BirthContext.from_client(client, system), artifact_type
        )
        try:
            return await task.run()
        except Exception as e:
            if is_endpoint_failure(e):
                health.mark_failed(system, artifact_type)
            raise

    # --- Recovery ---

    async def recover_stale_runs(self, limit: int = 100) -> list[str]:
        """
        Mark abandoned "processing" runs as failed so the next trigger resumes them.

        A run is abandoned when its status is older than the configured
        staleness window and no lock for the client is held.

        Returns:
            Client ids that were reset
        """
        cutoff = datetime.now(UTC) - timedelta(seconds=self.config.stale_processing_after_seconds)
        stuck = await self.clients.find_processing(older_than=cutoff, limit=limit)
        recovered = []
        for client in stuck:
            if await self.coordinator.is_active(client.client_id):
                continue
            await self.clients.set_generation_status(
                client.tenant_id, client.client_id, GenerationStatus.FAILED
            )
            recovered.append(client.client_id)
        if recovered:
            logger.warning(f"Recovered {len(recovered)} stale profile runs: {recovered}")
        return recovered

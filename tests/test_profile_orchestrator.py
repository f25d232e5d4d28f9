from datetime import UTC, datetime, timedelta

import pytest

from app.core.errors import NotFoundError, UpstreamUnavailableError, ValidationError
from app.models.profile import GenerationStatus
from conftest import TENANT, make_client
from constants.capabilities import VIMSHOTTARI_TYPE, expected_catalog


@pytest.mark.asyncio
async def test_full_run_generates_every_catalog_entry(orchestrator, clients, fake_astro, chart_cache):
    result = await orchestrator.generate_profile(TENANT, "client-1")

    assert result.status == GenerationStatus.COMPLETED
    assert result.failed == 0
    for system in ("lahiri", "raman", "kp"):
        assert result.per_system_missing_counts[system] == len(expected_catalog(system))
        assert sorted(await chart_cache.existing_types(TENANT, "client-1", system)) == sorted(
            expected_catalog(system)
        )
    assert result.generated == sum(len(expected_catalog(s)) for s in ("lahiri", "raman", "kp"))

    client = await clients.get(TENANT, "client-1")
    assert client.generation_status == GenerationStatus.COMPLETED
    assert client.generation_version == 1
    assert clients.status_history[0] == ("client-1", GenerationStatus.PROCESSING)


@pytest.mark.asyncio
async def test_second_run_dispatches_nothing(orchestrator, fake_astro):
    await orchestrator.generate_profile(TENANT, "client-1")
    calls_after_first = len(fake_astro.calls)

    result = await orchestrator.generate_profile(TENANT, "client-1")

    assert len(fake_astro.calls) == calls_after_first
    assert result.generated == 0
    assert result.per_system_missing_counts == {"lahiri": 0, "raman": 0, "kp": 0}
    assert result.status == GenerationStatus.COMPLETED


@pytest.mark.asyncio
async def test_vimshottari_is_generated_through_resolver(orchestrator, fake_astro, artifacts):
    await orchestrator.generate_profile(TENANT, "client-1")

    systems = [c[1] for c in fake_astro.calls_for("vimshottari_dasha")]
    assert systems == ["lahiri", "raman", "kp"]
    stored = await artifacts.find_one(TENANT, "client-1", VIMSHOTTARI_TYPE, "kp")
    assert stored.metadata["level"] == "tree"


@pytest.mark.asyncio
async def test_partial_failure_completes_and_marks_endpoint(orchestrator, fake_astro, coordinator, clock):
    fake_astro.fail("divisional_chart", "d9")

    result = await orchestrator.generate_profile(TENANT, "client-1")

    assert result.status == GenerationStatus.COMPLETED
    # D9 is in both the lahiri and raman catalogs
    assert result.failed == 2
    assert coordinator.health.should_skip("lahiri", "D9")
    assert coordinator.health.should_skip("raman", "D9")

    # Within the cooldown the endpoint is skipped, not retried
    d9_calls = len([c for c in fake_astro.calls if c[2] == "d9"])
    retry = await orchestrator.generate_profile(TENANT, "client-1")
    assert retry.skipped == 2
    assert len([c for c in fake_astro.calls if c[2] == "d9"]) == d9_calls

    # After the cooldown the gap is resumed
    fake_astro.failures.clear()
    clock.now[0] += 31
    resumed = await orchestrator.generate_profile(TENANT, "client-1")
    assert resumed.generated == 2
    assert resumed.failed == 0


@pytest.mark.asyncio
async def test_client_errors_do_not_trip_endpoint(orchestrator, fake_astro, coordinator):
    fake_astro.fail("yoga_analysis", "rare", status_code=400)

    result = await orchestrator.generate_profile(TENANT, "client-1")

    assert result.failed == 1
    assert not coordinator.health.should_skip("lahiri", "yoga:rare")


@pytest.mark.asyncio
async def test_run_is_noop_while_lock_held(orchestrator, coordinator, fake_astro):
    await coordinator.try_acquire("client-1")

    result = await orchestrator.generate_profile(TENANT, "client-1")

    assert result.skipped_run is True
    assert fake_astro.calls == []
    assert await orchestrator.ensure_profile(TENANT, "client-1") is False


@pytest.mark.asyncio
async def test_unexpected_error_marks_failed_and_releases_lock(orchestrator, clients, coordinator, monkeypatch):
    async def broken(*args, **kwargs):
        raise RuntimeError("storage offline")

    monkeypatch.setattr(orchestrator.cache, "existing_types", broken)

    with pytest.raises(RuntimeError):
        await orchestrator.generate_profile(TENANT, "client-1")

    client = await clients.get(TENANT, "client-1")
    assert client.generation_status == GenerationStatus.FAILED
    assert client.generation_version == 0
    assert not await coordinator.is_active("client-1")


@pytest.mark.asyncio
async def test_unknown_or_incomplete_client_raises(orchestrator, clients, coordinator):
    with pytest.raises(NotFoundError):
        await orchestrator.generate_profile(TENANT, "ghost")

    clients.add(make_client("client-2", latitude=None))
    with pytest.raises(ValidationError):
        await orchestrator.generate_profile(TENANT, "client-2")
    assert not await coordinator.is_active("client-2")


@pytest.mark.asyncio
async def test_ensure_profile_schedules_background_run(orchestrator, clients):
    assert await orchestrator.ensure_profile(TENANT, "client-1") is True
    await orchestrator.wait_for_background()

    client = await clients.get(TENANT, "client-1")
    assert client.generation_status == GenerationStatus.COMPLETED
    # Complete profile: nothing to schedule
    assert await orchestrator.ensure_profile(TENANT, "client-1") is False


@pytest.mark.asyncio
async def test_ensure_profile_skips_fresh_processing_and_bad_clients(orchestrator, clients):
    clients.add(
        make_client(
            "client-2",
            generation_status=GenerationStatus.PROCESSING,
            status_updated_at=datetime.now(UTC),
        )
    )
    clients.add(make_client("client-3", birth_date=None))

    assert await orchestrator.ensure_profile(TENANT, "client-2") is False
    assert await orchestrator.ensure_profile(TENANT, "client-3") is False
    assert await orchestrator.ensure_profile(TENANT, "ghost") is False


@pytest.mark.asyncio
async def test_ensure_profile_swallows_audit_errors(orchestrator, monkeypatch):
    async def broken(*args, **kwargs):
        raise RuntimeError("cache offline")

    monkeypatch.setattr(orchestrator.cache, "existing_types", broken)

    assert await orchestrator.ensure_profile(TENANT, "client-1") is False


@pytest.mark.asyncio
async def test_recover_stale_runs(orchestrator, clients, coordinator):
    old = datetime.now(UTC) - timedelta(hours=2)
    clients.add(make_client("stuck", generation_status=GenerationStatus.PROCESSING, status_updated_at=old))
    clients.add(make_client("running", generation_status=GenerationStatus.PROCESSING, status_updated_at=old))
    clients.add(
        make_client(
            "fresh",
            generation_status=GenerationStatus.PROCESSING,
            status_updated_at=datetime.now(UTC),
        )
    )
    await coordinator.try_acquire("running")

    recovered = await orchestrator.recover_stale_runs()

    assert recovered == ["stuck"]
    assert (await clients.get(TENANT, "stuck")).generation_status == GenerationStatus.FAILED
    assert (await clients.get(TENANT, "fresh")).generation_status == GenerationStatus.PROCESSING

    # A stale run no longer blocks the trigger
    assert await orchestrator.ensure_profile(TENANT, "stuck") is True
    await orchestrator.wait_for_background()


@pytest.mark.asyncio
async def test_generate_artifact_respects_cooldown_unless_forced(orchestrator, coordinator, fake_astro):
    coordinator.health.mark_failed("lahiri", "D9")

    with pytest.raises(UpstreamUnavailableError):
        await orchestrator.generate_artifact(TENANT, "client-1", "lahiri", "D9")

    saved = await orchestrator.generate_artifact(TENANT, "client-1", "lahiri", "D9", force=True)
    assert saved.artifact_type == "D9"
    assert fake_astro.calls == [("divisional_chart", "lahiri", "d9")]
    assert not coordinator.health.should_skip("lahiri", "D9")


@pytest.mark.asyncio
async def test_generate_artifact_rejects_unsupported_type(orchestrator):
    with pytest.raises(ValidationError):
        await orchestrator.generate_artifact(TENANT, "client-1", "kp", "D9")


@pytest.mark.asyncio
async def test_generate_artifact_stores_catalog_spelling(orchestrator, artifacts):
    await orchestrator.generate_artifact(TENANT, "client-1", "lahiri", "D9")
    saved = await orchestrator.generate_artifact(TENANT, "client-1", "lahiri", "d9")

    assert saved.artifact_type == "D9"
    rows = await artifacts.find_by_client(TENANT, "client-1", system="lahiri")
    assert [row.artifact_type for row in rows] == ["D9"]


@pytest.mark.asyncio
async def test_lock_taken_after_activity_check_is_noop(orchestrator, coordinator, fake_astro, monkeypatch):
    assert await coordinator.try_acquire("client-1")

    async def not_active(client_id):
        return False

    monkeypatch.setattr(coordinator, "is_active", not_active)
    result = await orchestrator.generate_profile(TENANT, "client-1")

    assert result.skipped_run is True
    assert fake_astro.calls == []
    # The other run still owns the lock
    assert await coordinator.locks.is_held("client-1")

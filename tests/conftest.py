import os

from datetime import UTC, date, datetime, time

import pytest

# Keep tests hermetic: no Redis, no PostgreSQL, no pacing between tasks
os.environ.setdefault("CACHE_BACKEND", "memory")
os.environ.setdefault("GENERATION_LOCK_BACKEND", "memory")
os.environ.setdefault("PROFILE_INTER_TASK_DELAY_SECONDS", "0")

from app.core.config import GenerationConfig  # noqa: E402
from app.core.errors import UpstreamError  # noqa: E402
from app.models.profile import ClientRecord  # noqa: E402
from app.services.artifact_generators import ArtifactGeneratorRouter  # noqa: E402
from app.services.astro_client import CalculationResult  # noqa: E402
from app.services.batch_dispatcher import BatchDispatcher  # noqa: E402
from app.services.cache_backend import MemoryCacheBackend  # noqa: E402
from app.services.chart_cache import ChartCache  # noqa: E402
from app.services.chart_repository import InMemoryArtifactRepository  # noqa: E402
from app.services.client_repository import InMemoryClientRepository  # noqa: E402
from app.services.dasha_resolver import DashaResolver  # noqa: E402
from app.services.endpoint_health import EndpointHealthTracker  # noqa: E402
from app.services.generation_coordinator import GenerationCoordinator  # noqa: E402
from app.services.profile_orchestrator import ProfileOrchestrator  # noqa: E402

TENANT = "tenant-a"

# Reference instant inside the Saturn mahadasha of the sample tree
NOW = datetime(2026, 6, 1, tzinfo=UTC)


def sample_mahadashas() -> list[dict]:
    """Three contiguous top-level periods in the calculation service's shape"""
    return [
        {
            "planet": "Jupiter",
            "start_date": "2006-01-01T00:00:00Z",
            "end_date": "2022-01-01T00:00:00Z",
            "duration_years": 16,
        },
        {
            "planet": "Saturn",
            "start_date": "2022-01-01T00:00:00Z",
            "end_date": "2040-12-31T18:00:00Z",
            "duration_years": 19,
        },
        {
            "planet": "Mercury",
            "start_date": "2040-12-31T18:00:00Z",
            "end_date": "2058-01-01T00:00:00Z",
            "duration_years": 17,
        },
    ]


class FakeAstroClient:
    """In-process stand-in for AstroEngineClient that records every call"""

    def __init__(self, dasha_payload=None):
        self.calls: list[tuple[str, str, str]] = []
        # (level, context path) of every dasha request
        self.dasha_requests: list[tuple[str, tuple[str, ...]]] = []
        self.dasha_payload = dasha_payload if dasha_payload is not None else {
            "dasha_list": sample_mahadashas()
        }
        # (method, name) -> exception to raise
        self.failures: dict[tuple[str, str], Exception] = {}

    def _result(self, method: str, system: str, name: str, data=None) -> CalculationResult:
        self.calls.append((method, system, name))
        failure = self.failures.get((method, name))
        if failure is not None:
            raise failure
        return CalculationResult(
            data=data if data is not None else {"chart": name, "system": system},
            calculatedAt=datetime(2026, 1, 1, tzinfo=UTC),
        )

    def fail(self, method: str, name: str, status_code: int = 500) -> None:
        self.failures[(method, name)] = UpstreamError(f"{name} failed", status_code=status_code)

    def calls_for(self, method: str) -> list[tuple[str, str, str]]:
        return [c for c in self.calls if c[0] == method]

    async def natal_chart(self, birth):
        return self._result("natal_chart", birth.system, "d1")

    async def divisional_chart(self, birth, chart_type):
        return self._result("divisional_chart", birth.system, chart_type)

    async def special_chart(self, birth, chart_name):
        return self._result("special_chart", birth.system, chart_name)

    async def ashtakavarga(self, birth, variant="bhinna"):
        return self._result("ashtakavarga", birth.system, variant)

    async def kp_chart(self, birth, chart_name):
        return self._result("kp_chart", birth.system, chart_name)

    async def vimshottari_dasha(self, birth, level="mahadasha", context_path=()):
        self.dasha_requests.append((level, tuple(context_path)))
        return self._result("vimshottari_dasha", birth.system, level, data=self.dasha_payload)

    async def other_dasha(self, birth, dasha_type):
        return self._result("other_dasha", birth.system, dasha_type)

    async def yoga_analysis(self, birth, yoga_type):
        return self._result("yoga_analysis", birth.system, yoga_type)

    async def dosha_analysis(self, birth, dosha_type):
        return self._result("dosha_analysis", birth.system, dosha_type)

    async def aclose(self):
        return None


def make_client(client_id: str = "client-1", **overrides) -> ClientRecord:
    fields = dict(
        tenant_id=TENANT,
        client_id=client_id,
        full_name="Test Client",
        birth_date=date(1990, 1, 1),
        birth_time=time(12, 0),
        latitude=28.6,
        longitude=77.2,
        timezone="Asia/Kolkata",
    )
    fields.update(overrides)
    return ClientRecord(**fields)


@pytest.fixture
def fake_astro():
    return FakeAstroClient()


@pytest.fixture
def clients():
    return InMemoryClientRepository([make_client()])


@pytest.fixture
def artifacts():
    return InMemoryArtifactRepository()


@pytest.fixture
def chart_cache(artifacts):
    return ChartCache(artifacts, backend=MemoryCacheBackend(), ttl_seconds=300)


@pytest.fixture
def resolver(clients, chart_cache, fake_astro):
    return DashaResolver(clients, chart_cache, fake_astro, min_depth=3)


@pytest.fixture
def clock():
    now = [1000.0]

    def _clock():
        return now[0]

    _clock.now = now  # type: ignore[attr-defined]
    return _clock


@pytest.fixture
def coordinator(clock):
    return GenerationCoordinator(health=EndpointHealthTracker(cooldown_seconds=30, clock=clock))


@pytest.fixture
def generation_config():
    return GenerationConfig(systems=("lahiri", "raman", "kp"), inter_task_delay_seconds=0.0)


@pytest.fixture
def orchestrator(clients, chart_cache, fake_astro, resolver, coordinator, generation_config):
    router = ArtifactGeneratorRouter(fake_astro, chart_cache, resolver)
    return ProfileOrchestrator(
        clients,
        chart_cache,
        router,
        coordinator,
        dispatcher=BatchDispatcher(concurrency=1, inter_task_delay=0.0),
        config=generation_config,
    )

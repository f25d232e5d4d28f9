#!/usr/bin/env python3
"""
Astro Engine client - HTTP access to the external calculation service.

All astronomical computation is delegated to the service; this client only
shapes requests, retries transient failures and maps errors.

Features:
- ``/internal`` routes (ayanamsa passed in the body) and ``/api`` routes
  (system-specific paths, e.g. Raman and KP)
- Retry with exponential backoff on 503/504, connection errors and timeouts
- Typed response envelope {data, cached, calculatedAt}
"""

import asyncio
import logging
import time

from datetime import datetime
from typing import Any, Optional

import httpx

from prometheus_client import Counter, Histogram
from pydantic import BaseModel, ConfigDict, Field

from app.core.config import AstroEngineConfig, get_astro_engine_config
from app.core.errors import (
    UpstreamError,
    UpstreamFormatError,
    UpstreamUnavailableError,
)
from app.models.profile import BirthContext

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {503, 504}

astro_requests_total = Counter(
    "profile_astro_engine_requests_total",
    "Calculation service requests",
    ["route", "outcome"],
)
astro_request_seconds = Histogram(
    "profile_astro_engine_request_seconds",
    "Calculation service request latency in seconds",
    ["route"],
)

# Special charts served from /api/charts/* (or /api/raman/* for Raman)
API_CHART_ROUTES = {
    "arudha_lagna": "arudha-lagna",
    "bhava_lagna": "bhava-lagna",
    "hora_lagna": "hora-lagna",
    "sripathi_bhava": "sripathi-bhava",
    "kp_bhava": "kp-bhava",
    "equal_bhava": "equal-bhava",
    "karkamsha_d1": "karkamsha-d1",
    "karkamsha_d9": "karkamsha-d9",
}

# Special charts served from /internal/*
INTERNAL_CHART_ROUTES = {
    "moon": "/moon-chart",
    "moon_chart": "/moon-chart",
    "sun": "/sun-chart",
    "sun_chart": "/sun-chart",
    "sudarshan": "/sudarshan-chakra",
}

KP_ROUTES = {
    "kp_planets_cusps": "/kp/planets-cusps",
    "kp_ruling_planets": "/kp/ruling-planets",
    "kp_bhava_details": "/kp/bhava-details",
    "kp_significations": "/kp/significations",
}

ASHTAKAVARGA_ROUTES = {
    "bhinna": "/ashtakavarga",
    "sarva": "/sarva-ashtakavarga",
    "shodasha": "/shodasha-varga",
}

# Query parameter names for the drill-down context, one per level
DASHA_CONTEXT_PARAMS = ("mahaLord", "antarLord", "pratyantarLord", "sookshmaLord")


class CalculationResult(BaseModel):
    """Response envelope of the calculation service"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    success: bool = True
    data: Any = None
    cached: bool = False
    calculated_at: Optional[datetime] = Field(None, alias="calculatedAt")
    error: Optional[str] = None


class AstroEngineClient:
    """
    Async client for the calculation service.

    Args:
        config: Connection and retry settings (defaults from environment)
        transport: Optional httpx transport, used by tests
        default_offset_hours: Fallback UTC offset for unresolvable timezones
    """

    def __init__(
        self,
        config: AstroEngineConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        default_offset_hours: float = 5.5,
    ):
        self.config = config or get_astro_engine_config()
        self.default_offset_hours = default_offset_hours
        self._sleep = asyncio.sleep
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=httpx.Timeout(
                self.config.timeout_seconds, connect=self.config.connect_timeout_seconds
            ),
            headers={
                "Content-Type": "application/json",
                "X-Service-Name": self.config.service_name,
            },
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    def _payload(self, birth: BirthContext, **extra: Any) -> dict[str, Any]:
        payload = birth.to_request(self.default_offset_hours)
        payload.update(extra)
        return payload

    async def _request(
        self,
        method: str,
        path: str,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        attempt = 0
        while True:
            started = time.perf_counter()
            try:
                response = await self._client.request(method, path, json=json_body, params=params)
            except (httpx.ConnectError, httpx.TimeoutException) as e:
                astro_requests_total.labels(route=path, outcome="network_error").inc()
                if attempt < self.config.max_retries:
                    await self._backoff(path, attempt, type(e).__name__)
                    attempt += 1
                    continue
                logger.error(f"Calculation service unreachable at {path}: {e}")
                raise UpstreamUnavailableError(path=path) from e
            except httpx.HTTPError as e:
                astro_requests_total.labels(route=path, outcome="transport_error").inc()
                raise UpstreamError(f"Calculation service request failed: {e}", path=path) from e
            finally:
                astro_request_seconds.labels(route=path).observe(time.perf_counter() - started)

            if response.status_code in RETRYABLE_STATUS and attempt < self.config.max_retries:
                astro_requests_total.labels(route=path, outcome="retry").inc()
                await self._backoff(path, attempt, str(response.status_code))
                attempt += 1
                continue

            if response.is_error:
                astro_requests_total.labels(route=path, outcome="error").inc()
                raise UpstreamError(
                    f"Calculation service returned {response.status_code} for {path}",
                    status_code=response.status_code,
                    path=path,
                )

            astro_requests_total.labels(route=path, outcome="ok").inc()
            return response

    async def _backoff(self, path: str, attempt: int, reason: str) -> None:
        delay = self.config.retry_backoff_seconds * (2 ** (attempt + 1))
        logger.warning(
            f"Retrying {path} after {reason} (attempt {attempt + 1}/{self.config.max_retries}) in {delay:.1f}s"
        )
        await self._sleep(delay)

    async def _post(
        self, path: str, payload: dict[str, Any], params: dict[str, Any] | None = None
    ) -> CalculationResult:
        response = await self._request("POST", path, json_body=payload, params=params)
        try:
            body = response.json()
        except ValueError as e:
            raise UpstreamFormatError(f"Non-JSON response from {path}", path=path) from e

        if not isinstance(body, dict):
            raise UpstreamFormatError(f"Unexpected response type from {path}", path=path)
        # Bare payloads without an envelope are accepted as data
        if "data" not in body and "success" not in body:
            body = {"data": body}

        result = CalculationResult.model_validate(body)
        if not result.success:
            raise UpstreamError(result.error or f"Calculation failed for {path}", status_code=502, path=path)
        return result

    # --- Charts ---

    async def natal_chart(self, birth: BirthContext) -> CalculationResult:
        return await self._post("/internal/natal", self._payload(birth))

    async def divisional_chart(self, birth: BirthContext, chart_type: str) -> CalculationResult:
        return await self._post(f"/internal/divisional/{chart_type.lower()}", self._payload(birth))

    async def special_chart(self, birth: BirthContext, chart_name: str) -> CalculationResult:
        """Moon/Sun/Sudarshan and the lagna/bhava family of special charts"""
        name = chart_name.lower()
        if name in INTERNAL_CHART_ROUTES:
            return await self._post(INTERNAL_CHART_ROUTES[name], self._payload(birth))
        if name in API_CHART_ROUTES:
            family = "raman" if birth.system == "raman" else "charts"
            return await self._post(f"/api/{family}/{API_CHART_ROUTES[name]}", self._payload(birth))
        return await self._post(f"/internal/special/{name}", self._payload(birth))

    async def ashtakavarga(self, birth: BirthContext, variant: str = "bhinna") -> CalculationResult:
        path = ASHTAKAVARGA_ROUTES.get(variant.lower())
        if path is None:
            raise UpstreamError(f"Unknown ashtakavarga variant '{variant}'", status_code=404)
        return await self._post(f"/internal{path}", self._payload(birth))

    async def kp_chart(self, birth: BirthContext, chart_name: str) -> CalculationResult:
        path = KP_ROUTES.get(chart_name.lower())
        if path is None:
            raise UpstreamError(f"Unknown KP chart '{chart_name}'", status_code=404)
        return await self._post(f"/api{path}", self._payload(birth))

    # --- Periods ---

    async def vimshottari_dasha(
        self,
        birth: BirthContext,
        level: str = "mahadasha",
        context_path: tuple[str, ...] | list[str] = (),
    ) -> CalculationResult:
        """
        Fetch Vimshottari periods.

        Args:
            birth: Birth data
            level: Requested level name (mahadasha, antardasha, ...)
            context_path: Ancestor lords identifying the drill-down target
        """
        params = {"level": level}
        for name, lord in zip(DASHA_CONTEXT_PARAMS, context_path):
            params[name] = lord
        return await self._post("/internal/dasha/vimshottari", self._payload(birth), params=params)

    async def other_dasha(self, birth: BirthContext, dasha_type: str) -> CalculationResult:
        return await self._post(
            "/internal/dasha/other", self._payload(birth), params={"type": dasha_type.lower()}
        )

    # --- Analyses ---

    async def yoga_analysis(self, birth: BirthContext, yoga_type: str) -> CalculationResult:
        return await self._post(f"/internal/yoga/{yoga_type.lower()}", self._payload(birth))

    async def dosha_analysis(self, birth: BirthContext, dosha_type: str) -> CalculationResult:
        return await self._post(f"/internal/dosha/{dosha_type.lower()}", self._payload(birth))

    async def is_healthy(self) -> bool:
        try:
            response = await self._client.get("/internal/health", timeout=5.0)
            return response.status_code == 200
        except httpx.HTTPError:
            return False

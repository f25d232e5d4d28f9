"""
Endpoint health tracking - lightweight circuit breaker.

Remembers which (system, artifact type) endpoints failed recently so bulk
generation runs skip them for a cooldown window instead of hammering a
failing route. Process-local and advisory only; nothing is persisted.
"""

from __future__ import annotations

import logging
import time

from typing import Callable

from prometheus_client import Counter

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SECONDS = 30.0

endpoint_failures_total = Counter(
    "profile_endpoint_failures_total", "Endpoint failures recorded", ["system"]
)


def endpoint_key(system: str, artifact_type: str) -> str:
    return f"{system.lower()}:{artifact_type.lower()}"


class EndpointHealthTracker:
    """
    Failure records keyed by "{system}:{artifact_type}".

    Args:
        cooldown_seconds: How long a failed endpoint is skipped
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] | None = None,
    ):
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock or time.monotonic
        self._failures: dict[str, float] = {}

    def should_skip(self, system: str, artifact_type: str) -> bool:
        failed_at = self._failures.get(endpoint_key(system, artifact_type))
        if failed_at is None:
            return False
        if self._clock() - failed_at < self.cooldown_seconds:
            return True
        # Expired record
        self._failures.pop(endpoint_key(system, artifact_type), None)
        return False

    def mark_failed(self, system: str, artifact_type: str) -> None:
        key = endpoint_key(system, artifact_type)
        self._failures[key] = self._clock()
        endpoint_failures_total.labels(system=system.lower()).inc()
        logger.warning(f"⚠️ Endpoint {key} marked failed for {self.cooldown_seconds:.0f}s")

    def clear_failure(self, system: str, artifact_type: str) -> None:
        self._failures.pop(endpoint_key(system, artifact_type), None)

    def failed_endpoints(self) -> list[dict[str, float | str]]:
        """Current failure records with seconds remaining in their cooldown"""
        now = self._clock()
        return [
            {"key": key, "retry_in_seconds": round(self.cooldown_seconds - (now - failed_at), 3)}
            for key, failed_at in self._failures.items()
            if now - failed_at < self.cooldown_seconds
        ]

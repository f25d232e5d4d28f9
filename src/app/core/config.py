#!/usr/bin/env python3
"""
Application configuration

Environment-driven settings for profile generation, the calculation
service client, caching and locking.
"""

import os

from dataclasses import dataclass, field

from constants.capabilities import PROFILE_SYSTEMS


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    items = tuple(part.strip().lower() for part in raw.split(",") if part.strip())
    return items or default


@dataclass
class AstroEngineConfig:
    """Calculation service client settings."""

    base_url: str = "http://localhost:3014"
    timeout_seconds: float = 60.0
    connect_timeout_seconds: float = 5.0
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    service_name: str = "profile-service"


@dataclass
class GenerationConfig:
    """Profile generation settings."""

    systems: tuple[str, ...] = PROFILE_SYSTEMS
    batch_concurrency: int = 1
    inter_task_delay_seconds: float = 0.5
    failure_cooldown_seconds: float = 30.0
    stale_processing_after_seconds: float = 1800.0
    lock_backend: str = "memory"
    lock_ttl_seconds: int = 900
    dasha_min_depth: int = 3
    default_utc_offset_hours: float = 5.5


@dataclass
class StorageConfig:
    """Cache and persistence settings."""

    cache_backend: str = "memory"
    cache_ttl_seconds: int = 300
    redis_url: str = "redis://localhost:6379/0"
    database_url: str | None = None
    compression_threshold_bytes: int = 10240


@dataclass
class ServiceConfig:
    """Complete service configuration."""

    astro_engine: AstroEngineConfig = field(default_factory=AstroEngineConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


def get_astro_engine_config() -> AstroEngineConfig:
    return AstroEngineConfig(
        base_url=os.getenv("ASTRO_ENGINE_URL", "http://localhost:3014").rstrip("/"),
        timeout_seconds=_env_float("ASTRO_ENGINE_TIMEOUT_SECONDS", 60.0),
        connect_timeout_seconds=_env_float("ASTRO_ENGINE_CONNECT_TIMEOUT_SECONDS", 5.0),
        max_retries=_env_int("ASTRO_ENGINE_MAX_RETRIES", 3),
        retry_backoff_seconds=_env_float("ASTRO_ENGINE_RETRY_BACKOFF_SECONDS", 1.0),
        service_name=os.getenv("SERVICE_NAME", "profile-service"),
    )


def get_generation_config() -> GenerationConfig:
    return GenerationConfig(
        systems=_env_list("PROFILE_SYSTEMS", PROFILE_SYSTEMS),
        batch_concurrency=max(1, _env_int("PROFILE_BATCH_CONCURRENCY", 1)),
        inter_task_delay_seconds=max(0.0, _env_float("PROFILE_INTER_TASK_DELAY_SECONDS", 0.5)),
        failure_cooldown_seconds=_env_float("ENDPOINT_FAILURE_COOLDOWN_SECONDS", 30.0),
        stale_processing_after_seconds=_env_float("STALE_PROCESSING_AFTER_SECONDS", 1800.0),
        lock_backend=os.getenv("GENERATION_LOCK_BACKEND", "memory").lower(),
        lock_ttl_seconds=_env_int("GENERATION_LOCK_TTL_SECONDS", 900),
        dasha_min_depth=min(6, max(1, _env_int("DASHA_MIN_DEPTH", 3))),
        default_utc_offset_hours=_env_float("DEFAULT_UTC_OFFSET_HOURS", 5.5),
    )


def get_storage_config() -> StorageConfig:
    return StorageConfig(
        cache_backend=os.getenv("CACHE_BACKEND", "memory").lower(),
        cache_ttl_seconds=_env_int("CHART_CACHE_TTL_SECONDS", 300),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        database_url=os.getenv("DATABASE_URL") or None,
        compression_threshold_bytes=_env_int("CHART_COMPRESSION_THRESHOLD_BYTES", 10240),
    )


def get_service_config() -> ServiceConfig:
    """Get complete service configuration from the environment."""
    return ServiceConfig(
        astro_engine=get_astro_engine_config(),
        generation=get_generation_config(),
        storage=get_storage_config(),
    )


# Environment variables reference
CONFIG_ENV_VARS = {
    "ASTRO_ENGINE_URL": "Calculation service base URL (default: http://localhost:3014)",
    "ASTRO_ENGINE_TIMEOUT_SECONDS": "Per-call timeout (default: 60)",
    "ASTRO_ENGINE_MAX_RETRIES": "Retries on 503/504/connection errors (default: 3)",
    "ASTRO_ENGINE_RETRY_BACKOFF_SECONDS": "Base of the exponential retry delay (default: 1)",
    "PROFILE_SYSTEMS": "Ordered systems for profile runs (default: lahiri,raman,kp)",
    "PROFILE_BATCH_CONCURRENCY": "Tasks per batch (default: 1)",
    "PROFILE_INTER_TASK_DELAY_SECONDS": "Delay between batches (default: 0.5)",
    "ENDPOINT_FAILURE_COOLDOWN_SECONDS": "Skip window after an endpoint failure (default: 30)",
    "STALE_PROCESSING_AFTER_SECONDS": "Age after which a processing run is abandoned (default: 1800)",
    "GENERATION_LOCK_BACKEND": "memory|redis (default: memory)",
    "GENERATION_LOCK_TTL_SECONDS": "Redis lock expiry (default: 900)",
    "DASHA_MIN_DEPTH": "Default period tree depth (default: 3)",
    "DEFAULT_UTC_OFFSET_HOURS": "Fallback birth UTC offset (default: 5.5)",
    "CACHE_BACKEND": "redis|memory (default: memory)",
    "CHART_CACHE_TTL_SECONDS": "Artifact cache TTL (default: 300)",
    "REDIS_URL": "redis://host:6379/0",
    "DATABASE_URL": "postgresql://... (in-memory repositories when unset)",
    "CHART_COMPRESSION_THRESHOLD_BYTES": "Payload size above which artifacts are gzipped (default: 10240)",
}

"""
Profile domain models - Pydantic V2 compliant.

BirthContext is the immutable calculation input; the dataclasses describe
persisted artifacts, client generation state and run results.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.functional_validators import AfterValidator

from app.core.errors import ValidationError
from refactor.time_utils import DEFAULT_UTC_OFFSET_HOURS, resolve_utc_offset_hours

# --- Validators ---


def validate_latitude(v: float) -> float:
    """Validate latitude is within valid range"""
    if not -90 <= v <= 90:
        raise ValueError(f"Latitude must be between -90 and 90, got {v}")
    return v


def validate_longitude(v: float) -> float:
    """Validate longitude is within valid range"""
    if not -180 <= v <= 180:
        raise ValueError(f"Longitude must be between -180 and 180, got {v}")
    return v


Latitude = Annotated[float, AfterValidator(validate_latitude)]
Longitude = Annotated[float, AfterValidator(validate_longitude)]


class GenerationStatus(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ClientRecord:
    """Client data as exposed by the client data provider"""

    tenant_id: str
    client_id: str
    full_name: str = ""
    birth_date: date | None = None
    birth_time: time | None = None
    latitude: float | None = None
    longitude: float | None = None
    timezone: str | None = None
    generation_status: GenerationStatus = GenerationStatus.IDLE
    generation_version: int = 0
    status_updated_at: datetime | None = None

    def has_birth_details(self) -> bool:
        return (
            self.birth_date is not None
            and self.birth_time is not None
            and self.latitude is not None
            and self.longitude is not None
        )


@dataclass
class Artifact:
    """Persisted computed output keyed by (tenant, client, type, system)"""

    tenant_id: str
    client_id: str
    artifact_type: str
    system: str
    payload: Any
    calculated_at: datetime | None = None
    updated_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.tenant_id, self.client_id, self.artifact_type, self.system)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "client_id": self.client_id,
            "artifact_type": self.artifact_type,
            "system": self.system,
            "payload": self.payload,
            "calculated_at": self.calculated_at.isoformat() if self.calculated_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Artifact":
        def _ts(value):
            return datetime.fromisoformat(value) if value else None

        return cls(
            tenant_id=data["tenant_id"],
            client_id=data["client_id"],
            artifact_type=data["artifact_type"],
            system=data["system"],
            payload=data.get("payload"),
            calculated_at=_ts(data.get("calculated_at")),
            updated_at=_ts(data.get("updated_at")),
            metadata=data.get("metadata") or {},
        )


class BirthContext(BaseModel):
    """Immutable birth data for one calculation request"""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    birth_date: date = Field(..., description="Local birth date")
    birth_time: time = Field(..., description="Local birth time")
    latitude: Latitude = Field(..., description="Birth latitude")
    longitude: Longitude = Field(..., description="Birth longitude")
    timezone: str | None = Field(None, description="IANA zone name or literal offset")
    system: str = Field("lahiri", description="Ayanamsa system")

    @field_validator("system")
    @classmethod
    def validate_system(cls, v: str) -> str:
        return v.lower()

    @classmethod
    def from_client(cls, client: ClientRecord, system: str) -> "BirthContext":
        """
        Build a context from a client record.

        Raises:
            ValidationError: when date, time, latitude or longitude is missing
        """
        if not client.has_birth_details():
            raise ValidationError(f"Client {client.client_id} birth details incomplete")
        try:
            return cls(
                birth_date=client.birth_date,
                birth_time=client.birth_time,
                latitude=client.latitude,
                longitude=client.longitude,
                timezone=client.timezone,
                system=system,
            )
        except ValueError as e:
            raise ValidationError(f"Client {client.client_id} birth details invalid: {e}") from e

    def for_system(self, system: str) -> "BirthContext":
        return self.model_copy(update={"system": system.lower()})

    def utc_offset_hours(self, default: float = DEFAULT_UTC_OFFSET_HOURS) -> float:
        return resolve_utc_offset_hours(self.timezone, self.birth_date, self.birth_time, default)

    def birth_instant(self) -> datetime:
        """Approximate UTC birth instant"""
        local = datetime.combine(self.birth_date, self.birth_time)
        offset = self.utc_offset_hours()
        return (local - timedelta(hours=offset)).replace(tzinfo=UTC)

    def to_request(self, default_offset: float = DEFAULT_UTC_OFFSET_HOURS) -> dict[str, Any]:
        """Request body understood by the calculation service"""
        return {
            "birthDate": self.birth_date.isoformat(),
            "birthTime": self.birth_time.strftime("%H:%M:%S"),
            "latitude": self.latitude,
            "longitude": self.longitude,
            "timezoneOffset": self.utc_offset_hours(default_offset),
            "ayanamsa": self.system,
            "system": self.system,
        }


@dataclass
class ResolvedPeriods:
    """Result of a period resolution"""

    periods: list[dict[str, Any]]
    source: str  # 'cache', 'external' or 'calculated'


@dataclass
class ProfileRunResult:
    """Outcome of one profile generation run"""

    status: GenerationStatus
    duration_ms: float = 0.0
    per_system_missing_counts: dict[str, int] = field(default_factory=dict)
    generated: int = 0
    failed: int = 0
    skipped: int = 0
    skipped_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "duration_ms": round(self.duration_ms, 2),
            "per_system_missing_counts": dict(self.per_system_missing_counts),
            "generated": self.generated,
            "failed": self.failed,
            "skipped": self.skipped,
            "skipped_run": self.skipped_run,
        }

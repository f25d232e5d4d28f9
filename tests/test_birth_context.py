from datetime import UTC, date, datetime, time

import pytest

from app.core.errors import ValidationError
from app.models.profile import BirthContext
from conftest import make_client
from refactor.time_utils import parse_offset_literal, resolve_utc_offset_hours


def test_from_client_builds_immutable_context():
    ctx = BirthContext.from_client(make_client(), "RAMAN")

    assert ctx.system == "raman"
    assert ctx.utc_offset_hours() == 5.5
    assert ctx.birth_instant() == datetime(1990, 1, 1, 6, 30, tzinfo=UTC)
    with pytest.raises(Exception):
        ctx.system = "kp"  # type: ignore[misc]
    assert ctx.for_system("kp").system == "kp"


@pytest.mark.parametrize(
    "overrides",
    [
        {"birth_date": None},
        {"birth_time": None},
        {"latitude": None},
        {"longitude": None},
        {"latitude": 123.0},
    ],
)
def test_incomplete_or_invalid_birth_data_rejected(overrides):
    with pytest.raises(ValidationError):
        BirthContext.from_client(make_client(**overrides), "lahiri")


def test_dst_resolved_at_birth_instant():
    summer = resolve_utc_offset_hours("America/New_York", date(1990, 7, 1), time(12, 0))
    winter = resolve_utc_offset_hours("America/New_York", date(1990, 1, 1), time(12, 0))
    assert summer == -4.0
    assert winter == -5.0


def test_offset_fallbacks():
    assert resolve_utc_offset_hours(None) == 5.5
    assert resolve_utc_offset_hours("Mars/Olympus", default=1.0) == 1.0
    assert resolve_utc_offset_hours("+05:45") == 5.75
    assert parse_offset_literal("UTC-4") == -4.0
    assert parse_offset_literal("+15:00") is None


def test_request_payload_shape():
    ctx = BirthContext.from_client(make_client(timezone=None), "kp")
    body = ctx.to_request(default_offset=3.0)

    assert body == {
        "birthDate": "1990-01-01",
        "birthTime": "12:00:00",
        "latitude": 28.6,
        "longitude": 77.2,
        "timezoneOffset": 3.0,
        "ayanamsa": "kp",
        "system": "kp",
    }

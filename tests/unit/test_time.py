from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from chronodid.core.exceptions import InvalidInputError
from chronodid.core.time import ensure_utc, from_unix, parse_dt, to_unix, utc_now


def test_utc_now_is_aware() -> None:
    assert utc_now().tzinfo is not None


def test_parse_dt_accepts_z_offsets_and_naive() -> None:
    assert parse_dt("2024-01-01T00:00:00Z") == datetime(2024, 1, 1, tzinfo=UTC)
    assert parse_dt("2024-01-01T02:00:00+02:00") == datetime(2024, 1, 1, tzinfo=UTC)
    assert parse_dt("2024-01-01T00:00:00") == datetime(2024, 1, 1, tzinfo=UTC)


def test_parse_dt_rejects_garbage() -> None:
    with pytest.raises(InvalidInputError):
        parse_dt("yesterday-ish")


def test_to_unix_floors_to_whole_seconds() -> None:
    assert to_unix(datetime(1970, 1, 1, 0, 0, 1, 999_999, tzinfo=UTC)) == 1
    assert to_unix(datetime(1970, 1, 1, 0, 25)) == 1500


def test_from_unix_round_trips_through_to_unix() -> None:
    assert to_unix(from_unix(1_700_000_000)) == 1_700_000_000


def test_ensure_utc_converts_offsets() -> None:
    dt = datetime(2024, 1, 1, 3, tzinfo=timezone(timedelta(hours=3)))
    assert ensure_utc(dt) == datetime(2024, 1, 1, tzinfo=UTC)

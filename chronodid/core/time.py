"""chronodid.core.time

This module is the *only* time helper surface in the codebase.

Ledger time is unix seconds. Everything that crosses a boundary is an aware UTC datetime.
"""

from __future__ import annotations

from datetime import UTC, datetime

from chronodid.core.exceptions import InvalidInputError


def utc_now() -> datetime:
    """Return an aware UTC datetime."""

    return datetime.now(tz=UTC)


def parse_dt(value: str) -> datetime:
    """Parse an ISO-8601 datetime string into an aware UTC datetime.

    Accepts:
    - `Z` suffix
    - explicit offsets
    - naive timestamps (assumed UTC)

    Raises:
        InvalidInputError: if parsing fails.
    """

    v = str(value).strip()
    if v.endswith("Z"):
        v = v[:-1] + "+00:00"

    try:
        dt = datetime.fromisoformat(v)
    except ValueError as e:
        raise InvalidInputError(f"invalid ISO-8601 timestamp: {value!r}") from e
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_unix(dt: datetime) -> int:
    """Whole unix seconds (floor), the ledger's unit of time."""

    return int(ensure_utc(dt).timestamp() // 1)


def from_unix(ts: int) -> datetime:
    return datetime.fromtimestamp(int(ts), tz=UTC)

"""Timestamp conversion: ISO-8601 on the wire, epoch milliseconds in storage."""

from __future__ import annotations

from datetime import datetime, timezone

import pendulum

from domain.errors import EntityValidationError


def parse_timestamp(value: str) -> int:
    """Parse an ISO-8601 timestamp into epoch milliseconds.

    Missing timezone is interpreted as UTC. Date-only strings resolve to
    midnight UTC.
    """
    if not isinstance(value, str) or not value.strip():
        raise EntityValidationError("updatedAt must be a non-empty ISO-8601 string")
    try:
        parsed = pendulum.parse(value.strip(), tz="UTC", strict=False)
    except ValueError as exc:
        raise EntityValidationError(f"Invalid timestamp: {value!r}") from exc
    if isinstance(parsed, pendulum.DateTime):
        return round(parsed.timestamp() * 1000)
    if isinstance(parsed, pendulum.Date):
        # pendulum.parse returns Date for date-only strings
        midnight = pendulum.datetime(parsed.year, parsed.month, parsed.day, tz="UTC")
        return round(midnight.timestamp() * 1000)
    raise EntityValidationError(f"Timestamp must include a date: {value!r}")


def format_timestamp(ms: int) -> str:
    """Format epoch milliseconds as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ms % 1000:03d}Z"


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for JSON serialization."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()

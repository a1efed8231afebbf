from __future__ import annotations

from datetime import UTC, datetime, timedelta


def now_utc() -> datetime:
    """Return timezone-aware UTC timestamp."""
    return datetime.now(tz=UTC)


def now_utc_naive() -> datetime:
    """Return naive UTC timestamp (for TIMESTAMP columns without tz)."""
    return now_utc().replace(tzinfo=None)


def cutoff(now: datetime, seconds: float | None) -> datetime | None:
    """Return ``now - seconds`` or None when no age limit is configured."""
    if seconds is None or seconds <= 0:
        return None
    return now - timedelta(seconds=seconds)


def iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()

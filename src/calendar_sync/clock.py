"""Timezone helpers.

All timestamps handled by the engine are UTC-aware. Some database backends
(SQLite) hand back naive datetimes for timezone-aware columns; `as_utc`
normalizes those before any comparison.
"""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(moment: datetime) -> datetime:
    """Midnight UTC of the day containing `moment`."""
    moment = as_utc(moment)
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def from_epoch_millis(value: str | int) -> datetime:
    """Parse an epoch-milliseconds value (the provider sends it as a string)."""
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)

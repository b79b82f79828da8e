"""
Timestamp helpers.

All timestamps handled by the sync engine are timezone-aware UTC datetimes.
They are stored in SQLite as ISO-8601 text, which sorts chronologically as
long as every value is written through to_iso().
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone

# Provider JSON dates look like /Date(1700000000000+0000)/
_MS_DATE_PATTERN = re.compile(r"^/Date\((-?\d+)([+-]\d{4})?\)/$")


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime for storage (fixed-width, UTC, microseconds)."""
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """
    Parse a stored or provider timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings (with or without offset or a trailing 'Z'),
    provider '/Date(ms+zzzz)/' strings, and datetimes.

    Raises:
        ValueError: If the value is not a recognizable timestamp
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)

    text = str(value).strip()
    match = _MS_DATE_PATTERN.match(text)
    if match:
        # The offset is informational; the millisecond value is already UTC
        return datetime.fromtimestamp(int(match.group(1)) / 1000, tz=timezone.utc)

    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def parse_date(value: str | date | None) -> str | None:
    """Normalize a date or datetime value to a 'YYYY-MM-DD' string."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value).date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    parsed = parse_timestamp(value)
    return parsed.date().isoformat() if parsed else None


def latest(*values: datetime | None) -> datetime | None:
    """Return the most recent of the given timestamps, ignoring None."""
    present = [ensure_utc(v) for v in values if v is not None]
    return max(present) if present else None

"""Datetime helpers shared by billing code"""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return value as an aware UTC datetime.

    Some backends (SQLite) hand back naive datetimes even for timezone-aware
    columns; those are stored in UTC, so they are tagged rather than converted.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_timestamp(value) -> Optional[datetime]:
    """Convert a unix timestamp (seconds) to an aware UTC datetime"""
    if value is None or value == "":
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def parse_iso(value) -> Optional[datetime]:
    """Parse an ISO-8601 string (processor payloads) into an aware UTC datetime"""
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    text = str(value).strip().replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        # Kiwify sends "YYYY-MM-DD HH:MM" without seconds or offset
        parsed = datetime.strptime(text[:16], "%Y-%m-%d %H:%M")
    return as_utc(parsed)

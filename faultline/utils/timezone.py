"""
UTC helpers.
All timestamps are stored and compared in UTC. Some drivers (SQLite) hand
back naive datetimes, which are UTC by construction.
"""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def rfc3339(value: datetime) -> str:
    """Format as RFC 3339 with a Z suffix and no fractional seconds."""
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")

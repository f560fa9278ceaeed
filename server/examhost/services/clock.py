"""
Time helpers.

All timestamps are timezone-aware UTC. SQLite hands back naive datetimes,
so anything read from the database goes through ``ensure_utc`` first.
"""
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_clock() -> Clock:
    """FastAPI dependency; tests override it with a fixed clock."""
    return utcnow

"""
Time helpers shared by scoring, percentiles and passports.

All engine timestamps are UTC. SQLite drops tzinfo on the way back out, so
anything read from a row goes through ``ensure_timezone_aware`` before being
compared with ``utc_now()``.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Single patchable source of "now" for the engine."""
    return datetime.now(timezone.utc)


def ensure_timezone_aware(dt: Optional[datetime]) -> datetime:
    """Attach UTC to a naive datetime read back from the database.

    Raises:
        ValueError: If dt is None
    """
    if dt is None:
        raise ValueError("datetime cannot be None")
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def elapsed_seconds(started_at: Optional[datetime], finished_at: Optional[datetime]) -> int:
    """Whole seconds between two timestamps; 0 when either is missing or they are reversed."""
    if started_at is None or finished_at is None:
        return 0
    delta = ensure_timezone_aware(finished_at) - ensure_timezone_aware(started_at)
    return max(0, int(delta.total_seconds()))


def window_start(now: datetime, *, minutes: int = 0, days: int = 0) -> datetime:
    """Start of the trailing window ending at ``now``."""
    return now - timedelta(minutes=minutes, days=days)


def is_older_than(dt: datetime, days: int, now: Optional[datetime] = None) -> bool:
    return ensure_timezone_aware(dt) < window_start(now or utc_now(), days=days)

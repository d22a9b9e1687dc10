from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

DAY = timedelta(days=1)


def utc_now() -> datetime:
    """Return current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure the given datetime is timezone-aware in UTC.

    - If dt is None, returns None.
    - If dt is naive, interpret it as UTC. Naive values only come back from
      database drivers that drop the offset (SQLite), and everything this
      service writes is UTC.
    - If dt has a timezone, convert to UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def elapsed_days(start: datetime, end: datetime) -> float:
    """Fractional days between two instants (negative if end precedes start)."""
    return (ensure_aware_utc(end) - ensure_aware_utc(start)) / DAY


def isoformat_utc(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to RFC3339/ISO8601 string with 'Z' suffix for UTC.

    Returns None if dt is None.
    """
    if dt is None:
        return None
    s = ensure_aware_utc(dt).isoformat()
    if s.endswith("+00:00"):
        s = s[:-6] + "Z"
    return s


__all__ = [
    "DAY",
    "utc_now",
    "ensure_aware_utc",
    "elapsed_days",
    "isoformat_utc",
]

from __future__ import annotations
from datetime import datetime, UTC
from typing import Optional

__all__ = ["utc_now", "ensure_aware_utc", "to_naive_utc", "is_past"]

def utc_now() -> datetime:
    """Return timezone-aware UTC now."""
    return datetime.now(UTC)

def ensure_aware_utc(dt: datetime | None) -> Optional[datetime]:
    """Ensure a datetime is timezone-aware in UTC (naive values are read back from storage as UTC)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)

def to_naive_utc(dt: datetime | None) -> Optional[datetime]:
    """Convert aware datetime to naive UTC for storage; pass through naive assumed UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(UTC).replace(tzinfo=None)

def is_past(dt: datetime | None, now: datetime | None = None) -> bool:
    """True when ``dt`` lies strictly before ``now``; mixes naive and aware safely."""
    if dt is None:
        return False
    return ensure_aware_utc(dt) < ensure_aware_utc(now or utc_now())

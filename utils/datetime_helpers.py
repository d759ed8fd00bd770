"""
All persisted timestamps are timezone-naive UTC (DateTime(timezone=False)).
Deadlines, auction end times and sweep cut-offs are compared against
get_naive_utc_now(), so aware datetimes must be normalized before use.
"""

from datetime import datetime, timezone
from typing import Optional


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """Aware datetimes are converted to UTC and stripped; naive ones are assumed UTC already"""
    if dt is None:
        return None

    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Current UTC time as a naive datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def resolve_now(now: Optional[datetime]) -> datetime:
    """Use the caller's clock when given (jobs, tests), otherwise the wall clock"""
    if now is None:
        return get_naive_utc_now()
    return ensure_naive_datetime(now)

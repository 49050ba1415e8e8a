from datetime import date, datetime, timedelta, timezone
from typing import Optional, Union

import dateutil.parser

SECONDS_PER_DAY = 24 * 60 * 60


def to_utc(dt: datetime) -> datetime:
    """
    Normalizes a datetime to UTC.
    - If tz-aware: convert to UTC
    - If naive: assume UTC
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_ts(value: Union[str, datetime, None]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    return to_utc(dateutil.parser.parse(value))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def fractional_days(start: datetime, end: datetime) -> float:
    return (to_utc(end) - to_utc(start)).total_seconds() / SECONDS_PER_DAY


def whole_days(start: Optional[datetime], end: datetime) -> Optional[int]:
    """Whole days elapsed between two instants, floored."""
    if start is None:
        return None
    return int((to_utc(end) - to_utc(start)) // timedelta(days=1))


def add_days(dt: datetime, days: int) -> date:
    return (to_utc(dt) + timedelta(days=days)).date()

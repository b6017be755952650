from __future__ import annotations

import math
from datetime import date, datetime, time, timedelta
from typing import Optional, Tuple, Union

from dateutil.relativedelta import relativedelta
from zoneinfo import ZoneInfo

from .config import BUSINESS_TIMEZONE

LOCAL_TZ = ZoneInfo(BUSINESS_TIMEZONE)
ONE_DAY = timedelta(days=1)


DatetimeLike = Optional[Union[datetime, date]]


def now_local() -> datetime:
    return datetime.now(tz=LOCAL_TZ)


def ensure_local_datetime(value: DatetimeLike) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=LOCAL_TZ)
    if value.tzinfo is None:
        # naive values come back from SQLite; they were written in business time
        return value.replace(tzinfo=LOCAL_TZ)
    return value.astimezone(LOCAL_TZ)


def add_months(value: datetime, months: int) -> datetime:
    """Calendar-month arithmetic; the day is clamped to the target month's end."""
    return value + relativedelta(months=months)


def days_overdue(due_date: DatetimeLike, now: datetime) -> int:
    """Whole days past ``due_date``, rounded up; 0 when not yet due."""
    due = ensure_local_datetime(due_date)
    if due is None or due >= now:
        return 0
    return math.ceil((now - due) / ONE_DAY)


def is_past(value: DatetimeLike, now: datetime) -> bool:
    converted = ensure_local_datetime(value)
    return converted is not None and converted < now


def same_calendar_month(value: DatetimeLike, now: datetime) -> bool:
    converted = ensure_local_datetime(value)
    if converted is None:
        return False
    reference = ensure_local_datetime(now)
    return converted.year == reference.year and converted.month == reference.month


def parse_day_range(raw: str) -> Tuple[datetime, datetime]:
    """Return ``[start, start + 1 day)`` for a ``YYYY-MM-DD`` (or ISO datetime) string."""
    text = (raw or "").strip()
    if not text:
        raise ValueError("Empty date value")
    try:
        parsed_date = date.fromisoformat(text)
    except ValueError:
        try:
            parsed_date = datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError as exc:
            raise ValueError("Invalid date format") from exc
    start = datetime.combine(parsed_date, time.min, tzinfo=LOCAL_TZ)
    return start, start + ONE_DAY

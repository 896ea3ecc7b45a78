"""Calendar helpers shared by the availability modules."""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterator

from staycal.errors import ValidationError

# Returns naive UTC; DateTime columns are stored without tzinfo.
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def validate_range(start: date, end: date) -> None:
    """Reject an empty or inverted half-open range."""
    if not isinstance(start, date) or not isinstance(end, date):
        raise ValidationError("Start and end must be calendar dates")
    if isinstance(start, datetime) or isinstance(end, datetime):
        raise ValidationError("Dates must not carry a time component")
    if start >= end:
        raise ValidationError(f"Start date {start} must be before end date {end}")


def date_range(start: date, end: date) -> Iterator[date]:
    """Yield every day in [start, end)."""
    current = start
    while current < end:
        yield current
        current += timedelta(days=1)


def nights_between(check_in: date, check_out: date) -> int:
    return (check_out - check_in).days


def add_months(day: date, months: int) -> date:
    """Shift by whole months, clamping to the last day of the target month."""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))

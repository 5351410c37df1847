from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterator, Optional

from errors import ValidationError
from models import IntervalUnit, RecurrencePattern


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def is_leap_year(year: int) -> bool:
    return year % 4 == 0 and (year % 100 != 0 or year % 400 == 0)


def days_in_month(year: int, month: int) -> int:
    if not 1 <= month <= 12:
        raise ValidationError(f"Month must be between 1 and 12, got {month}")
    if month == 2:
        return 29 if is_leap_year(year) else 28
    if month in (4, 6, 9, 11):
        return 30
    return 31


def make_date(year: int, month: int, day: int) -> date:
    """Build a date, rejecting impossible month/day combinations."""
    if not 1 <= year <= 9999:
        raise ValidationError(f"Year out of range: {year}")
    dim = days_in_month(year, month)
    if not 1 <= day <= dim:
        raise ValidationError(f"Invalid day {day} for {year}-{month:02d}")
    return date(year, month, day)


def clamp_day(year: int, month: int, day: int) -> date:
    """Clamp-down: an anchor past the end of the month lands on its last day."""
    if day < 1:
        raise ValidationError(f"Day must be positive, got {day}")
    return date(year, month, min(day, days_in_month(year, month)))


def add_months(base: date, months: int, *, anchor_day: Optional[int] = None) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    if not 1 <= year <= 9999:
        raise ValidationError(f"Date arithmetic left the supported range: {year}")
    return clamp_day(year, month, anchor_day or base.day)


def add_interval(
    current: date,
    pattern: RecurrencePattern,
    n: int = 1,
    *,
    anchor_day: Optional[int] = None,
) -> date:
    """Step ``n`` recurrence intervals from ``current`` (negative ``n`` steps back).

    Monthly and yearly steps aim for ``anchor_day`` (default: the day of
    ``current``) and clamp down in short months, so an anchor of 31 moves
    Jan 31 -> Feb 28/29 -> Mar 31.
    """
    steps = pattern.interval * n
    if pattern.unit == IntervalUnit.daily:
        return _shift_days(current, steps)
    if pattern.unit == IntervalUnit.weekly:
        return _shift_days(current, 7 * steps)
    if pattern.unit == IntervalUnit.monthly:
        return add_months(current, steps, anchor_day=anchor_day)
    if pattern.unit == IntervalUnit.yearly:
        return add_months(current, 12 * steps, anchor_day=anchor_day)
    raise ValidationError(f"Unsupported recurrence unit: {pattern.unit!r}")


def _shift_days(current: date, days: int) -> date:
    try:
        return current + timedelta(days=days)
    except OverflowError as exc:
        raise ValidationError("Date arithmetic left the supported range") from exc


def days_between(start: date, end: date) -> int:
    return (end - start).days


def compare(a: date, b: date) -> int:
    if a < b:
        return -1
    if a > b:
        return 1
    return 0


def is_same_month(a: date, b: date) -> bool:
    return (a.year, a.month) == (b.year, b.month)


def month_bucket_of(value: date) -> tuple[int, int]:
    """Return the ``(month, year)`` bucket a date falls into."""
    return value.month, value.year


def month_start(year: int, month: int) -> date:
    return make_date(year, month, 1)


def month_end(year: int, month: int) -> date:
    return make_date(year, month, days_in_month(year, month))


def iter_month_buckets(start: date, end: date) -> Iterator[tuple[int, int]]:
    if start > end:
        return
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        yield month, year
        if month == 12:
            year, month = year + 1, 1
        else:
            month += 1


def iter_year_buckets(start: date, end: date) -> Iterator[int]:
    return iter(range(start.year, end.year + 1)) if start <= end else iter(())


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if not period or period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "last_month":
        first_this = today.replace(day=1)
        last_month_end = first_this - date.resolution
        last_month_start = last_month_end.replace(day=1)
        return Period("last_month", last_month_start, last_month_end)
    if period == "custom":
        if not start or not end:
            raise ValidationError("Custom period requires start and end dates")
        try:
            start_date = date.fromisoformat(start)
            end_date = date.fromisoformat(end)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if start_date > end_date:
            raise ValidationError("Start date must be before end date")
        return Period("custom", start_date, end_date)
    if period != "this_month":
        raise ValidationError(f"Unknown period: {period}")

    return Period(
        "this_month",
        month_start(today.year, today.month),
        month_end(today.year, today.month),
    )

"""Calendar arithmetic for monthly billing.

Everything here is pure. Month keys are ``YYYY-MM`` strings; callers pass
``today`` explicitly so an active subscription's open end is re-derived on
every evaluation instead of being stored.
"""

import re
from datetime import date
from typing import Optional, Union

from errors import ComputationInvariantViolation, ValidationError

MONTH_KEY_RE = re.compile(r"^(\d{4})-(\d{2})$")

MonthLike = Union[str, date]


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def clamped_billing_date(year: int, month: int, billing_day: int) -> date:
    if not 1 <= billing_day <= 31:
        raise ComputationInvariantViolation(
            f"billing_day {billing_day} outside 1-31 reached the billing engine"
        )
    return date(year, month, min(billing_day, days_in_month(year, month)))


def add_months(base: date, months: int, *, desired_day: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return clamped_billing_date(year, month, desired_day)


def next_billing_date(current: date, billing_day: Optional[int] = None) -> date:
    """Return the charge date one month after ``current``.

    With ``billing_day`` the anchor is preserved across short months
    (Jan 31 -> Feb 28 -> Mar 31). Without it the anchor is ``current.day``,
    so a clamped date stays clamped (Jan 31 -> Feb 28 -> Mar 28).
    """
    anchor = billing_day if billing_day is not None else current.day
    return add_months(current, 1, desired_day=anchor)


def month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def parse_month_key(key: str) -> tuple[int, int]:
    match = MONTH_KEY_RE.match(key or "")
    if not match:
        raise ValidationError(f"Invalid month '{key}', expected YYYY-MM")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12 or year < 1970:
        raise ValidationError(f"Invalid month '{key}', expected YYYY-MM")
    return year, month


def to_month_key(value: MonthLike) -> str:
    if isinstance(value, date):
        return month_key(value)
    parse_month_key(value)
    return value


def month_index(key: str) -> int:
    year, month = parse_month_key(key)
    return year * 12 + (month - 1)


def key_from_index(index: int) -> str:
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def shift_month(key: str, count: int) -> str:
    return key_from_index(month_index(key) + count)


def month_span(start: MonthLike, end: MonthLike) -> int:
    """Number of months in ``[start, end]``; zero when the range is inverted."""
    return max(0, month_index(to_month_key(end)) - month_index(to_month_key(start)) + 1)


def iter_month_keys(start: MonthLike, end: MonthLike) -> list[str]:
    first = month_index(to_month_key(start))
    last = month_index(to_month_key(end))
    return [key_from_index(i) for i in range(first, last + 1)]


def effective_end_month(
    end_date: Optional[date], is_active: bool, horizon: date
) -> str:
    """Last billable month: ``min(end_date or +inf, horizon if active else end_date)``.

    An inactive record without an end date is treated as running to the horizon.
    """
    if end_date is None:
        return month_key(horizon)
    if not is_active:
        return month_key(end_date)
    return month_key(min(end_date, horizon))


def billable_range(
    start_date: date,
    end_date: Optional[date],
    is_active: bool,
    horizon: date,
) -> Optional[tuple[str, str]]:
    first = month_key(start_date)
    last = effective_end_month(end_date, is_active, horizon)
    if month_index(last) < month_index(first):
        return None
    return first, last


def months_overlap(
    start_date: date,
    end_date: Optional[date],
    is_active: bool,
    window_start: MonthLike,
    window_end: MonthLike,
    today: date,
) -> list[str]:
    """Ordered month keys in ``[window_start, window_end]`` the subscription billed.

    Active subscriptions bill through the month of ``today`` inclusive.
    """
    billable = billable_range(start_date, end_date, is_active, today)
    if billable is None:
        return []
    first = max(month_index(billable[0]), month_index(to_month_key(window_start)))
    last = min(month_index(billable[1]), month_index(to_month_key(window_end)))
    return [key_from_index(i) for i in range(first, last + 1)]


def due_billing_dates(
    start_date: date,
    end_date: Optional[date],
    billing_day: int,
    scan_from: str,
    today: date,
) -> list[tuple[str, date]]:
    """(month key, charge date) pairs in ``[scan_from, month(today)]`` already due.

    Only months inside the billable range count, matching ``months_overlap``.
    In the start month the charge never precedes ``start_date``; in the end
    month it never follows ``end_date``.
    """
    billable = billable_range(start_date, end_date, True, today)
    if billable is None:
        return []
    first = max(month_index(billable[0]), month_index(scan_from))
    last = month_index(billable[1])
    due: list[tuple[str, date]] = []
    for index in range(first, last + 1):
        key = key_from_index(index)
        year, month = parse_month_key(key)
        charge_on = max(clamped_billing_date(year, month, billing_day), start_date)
        if end_date is not None:
            charge_on = min(charge_on, end_date)
        if charge_on > today:
            continue
        due.append((key, charge_on))
    return due

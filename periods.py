import re
from dataclasses import dataclass
from datetime import date
from typing import Optional

from billing import month_index, month_key, shift_month, to_month_key
from errors import ValidationError

LAST_N_MONTHS_RE = re.compile(r"^last_(\d{1,3})_months$")
MAX_WINDOW_MONTHS = 120


@dataclass(frozen=True)
class MonthWindow:
    slug: str
    start: str
    end: str


def resolve_window(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: date,
) -> MonthWindow:
    current = month_key(today)
    if not period:
        period = "last_6_months"

    if period == "this_month":
        return MonthWindow("this_month", current, current)
    if period == "this_year":
        return MonthWindow("this_year", f"{today.year:04d}-01", f"{today.year:04d}-12")
    if period == "custom":
        if not start or not end:
            raise ValidationError("Custom period requires start and end months")
        start_key = to_month_key(start)
        end_key = to_month_key(end)
        if month_index(start_key) > month_index(end_key):
            raise ValidationError("Start month must not be after end month")
        if month_index(end_key) - month_index(start_key) >= MAX_WINDOW_MONTHS:
            raise ValidationError(f"Window may span at most {MAX_WINDOW_MONTHS} months")
        return MonthWindow("custom", start_key, end_key)

    match = LAST_N_MONTHS_RE.match(period)
    if match:
        count = int(match.group(1))
        if not 1 <= count <= MAX_WINDOW_MONTHS:
            raise ValidationError(f"Window may span 1 to {MAX_WINDOW_MONTHS} months")
        return MonthWindow(period, shift_month(current, -(count - 1)), current)

    raise ValidationError(f"Unknown period '{period}'")

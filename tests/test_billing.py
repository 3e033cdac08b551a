from datetime import date

import pytest

from billing import (
    clamped_billing_date,
    days_in_month,
    due_billing_dates,
    iter_month_keys,
    month_span,
    months_overlap,
    next_billing_date,
    parse_month_key,
    shift_month,
)
from errors import ComputationInvariantViolation, ValidationError


def test_clamped_billing_date_stays_within_month() -> None:
    for year in (2023, 2024):
        for month in range(1, 13):
            for billing_day in range(1, 32):
                billed = clamped_billing_date(year, month, billing_day)
                assert (billed.year, billed.month) == (year, month)
                assert billed.day == min(billing_day, days_in_month(year, month))


def test_clamped_billing_date_day_31() -> None:
    assert clamped_billing_date(2023, 2, 31) == date(2023, 2, 28)
    assert clamped_billing_date(2024, 2, 31) == date(2024, 2, 29)
    assert clamped_billing_date(2024, 4, 31) == date(2024, 4, 30)


def test_clamped_billing_date_rejects_out_of_range_anchor() -> None:
    with pytest.raises(ComputationInvariantViolation):
        clamped_billing_date(2024, 1, 0)
    with pytest.raises(ComputationInvariantViolation):
        clamped_billing_date(2024, 1, 32)


def test_next_billing_date_does_not_spill_into_following_month() -> None:
    first = next_billing_date(date(2023, 1, 31))
    assert first == date(2023, 2, 28)
    # Without an explicit anchor the clamped day carries forward.
    assert next_billing_date(first) == date(2023, 3, 28)


def test_next_billing_date_keeps_anchor_day() -> None:
    first = next_billing_date(date(2023, 1, 31), 31)
    assert first == date(2023, 2, 28)
    assert next_billing_date(first, 31) == date(2023, 3, 31)


def test_next_billing_date_crosses_year_boundary() -> None:
    assert next_billing_date(date(2024, 12, 31), 31) == date(2025, 1, 31)


def test_months_overlap_for_terminated_subscription() -> None:
    months = months_overlap(
        date(2024, 3, 15),
        date(2024, 5, 10),
        False,
        "2024-01",
        "2024-06",
        today=date(2024, 8, 1),
    )
    assert months == ["2024-03", "2024-04", "2024-05"]


def test_months_overlap_active_runs_through_current_month() -> None:
    months = months_overlap(
        date(2024, 2, 1), None, True, "2024-01", "2024-06", today=date(2024, 4, 10)
    )
    assert months == ["2024-02", "2024-03", "2024-04"]


def test_months_overlap_active_end_date_caps_at_today() -> None:
    months = months_overlap(
        date(2024, 1, 1),
        date(2024, 12, 31),
        True,
        "2024-01",
        "2024-12",
        today=date(2024, 3, 5),
    )
    assert months == ["2024-01", "2024-02", "2024-03"]


def test_months_overlap_terminated_with_future_end_runs_to_end() -> None:
    months = months_overlap(
        date(2024, 1, 1),
        date(2024, 9, 30),
        False,
        "2024-01",
        "2024-12",
        today=date(2024, 4, 1),
    )
    assert months[0] == "2024-01"
    assert months[-1] == "2024-09"
    assert len(months) == 9


def test_months_overlap_outside_window_is_empty() -> None:
    assert (
        months_overlap(
            date(2024, 8, 1), None, True, "2024-01", "2024-06", today=date(2024, 9, 1)
        )
        == []
    )
    assert (
        months_overlap(
            date(2023, 1, 1),
            date(2023, 6, 1),
            False,
            "2024-01",
            "2024-06",
            today=date(2024, 9, 1),
        )
        == []
    )


def test_month_key_helpers() -> None:
    assert parse_month_key("2024-02") == (2024, 2)
    assert shift_month("2024-01", -1) == "2023-12"
    assert shift_month("2024-11", 3) == "2025-02"
    assert iter_month_keys("2023-11", "2024-02") == [
        "2023-11",
        "2023-12",
        "2024-01",
        "2024-02",
    ]
    assert month_span("2024-01", "2024-12") == 12
    assert month_span("2024-05", "2024-01") == 0


@pytest.mark.parametrize("raw", ["2024-13", "2024-1", "24-01", "", "2024/01"])
def test_parse_month_key_rejects_malformed(raw: str) -> None:
    with pytest.raises(ValidationError):
        parse_month_key(raw)


def test_due_billing_dates_never_precede_start() -> None:
    due = due_billing_dates(
        date(2024, 1, 20), None, 10, "2024-01", today=date(2024, 3, 9)
    )
    assert due == [("2024-01", date(2024, 1, 20)), ("2024-02", date(2024, 2, 10))]


def test_due_billing_dates_clamps_short_months() -> None:
    due = due_billing_dates(
        date(2024, 1, 31), None, 31, "2024-01", today=date(2024, 4, 30)
    )
    assert [charge for _month, charge in due] == [
        date(2024, 1, 31),
        date(2024, 2, 29),
        date(2024, 3, 31),
        date(2024, 4, 30),
    ]


def test_due_billing_dates_never_follow_end() -> None:
    due = due_billing_dates(
        date(2024, 1, 1), date(2024, 2, 10), 15, "2024-01", today=date(2024, 4, 10)
    )
    assert due == [("2024-01", date(2024, 1, 15)), ("2024-02", date(2024, 2, 10))]
    assert months_overlap(
        date(2024, 1, 1), date(2024, 2, 10), True, "2024-01", "2024-04", date(2024, 4, 10)
    ) == [month for month, _charge in due]

"""Spend aggregation over live subscription templates.

Totals are derived from each template's billable month range; materialized
snapshots are never summed, so a month that has both a live template and a
snapshot is counted once. The functions take plain record sequences so the
month iteration stays independent of how records are loaded.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional

from billing import (
    MonthLike,
    billable_range,
    iter_month_keys,
    month_index,
    month_key,
    months_overlap,
    to_month_key,
)
from errors import ComputationInvariantViolation, ValidationError
from models import RecordKind, Subscription, SubscriptionCategory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MonthlyTotal:
    month: str
    total: int


@dataclass(frozen=True)
class CategoryTotal:
    category: SubscriptionCategory
    total: int


@dataclass(frozen=True)
class ServiceEstimate:
    id: str
    name: str
    amount: int
    months_used: int
    start_date: date
    end_date: Optional[date]


@dataclass(frozen=True)
class CategoryEstimate:
    category: SubscriptionCategory
    total_amount: int
    per_service: list[ServiceEstimate] = field(default_factory=list)


@dataclass(frozen=True)
class AnnualEstimate:
    year: int
    total_amount: int
    per_category: list[CategoryEstimate] = field(default_factory=list)


@dataclass(frozen=True)
class SpendSummary:
    month: str
    monthly_total: int
    active_count: int
    by_category: list[CategoryTotal] = field(default_factory=list)


def _templates(records: Iterable[Subscription]) -> list[Subscription]:
    return [r for r in records if r.kind == RecordKind.template]


def _overlapping(
    records: Iterable[Subscription], first: str, last: str, horizon: date
) -> list[Subscription]:
    """Templates whose billable range intersects ``[first, last]``."""
    lo, hi = month_index(first), month_index(last)
    out: list[Subscription] = []
    for record in _templates(records):
        billable = billable_range(
            record.start_date, record.end_date, record.is_active, horizon
        )
        if billable is None:
            continue
        if month_index(billable[0]) > hi or month_index(billable[1]) < lo:
            continue
        out.append(record)
    return out


def _billed_months(
    record: Subscription, first: str, last: str, horizon: date
) -> list[str]:
    months = months_overlap(
        record.start_date, record.end_date, record.is_active, first, last, horizon
    )
    if not months:
        raise ComputationInvariantViolation(
            f"Subscription {record.id} overlaps {first}..{last} but bills no month"
        )
    return months


def _sorted_category_totals(totals: dict[SubscriptionCategory, int]) -> list[CategoryTotal]:
    items = sorted(totals.items(), key=lambda item: (-item[1], item[0].value))
    return [CategoryTotal(category=c, total=t) for c, t in items if t > 0]


def compute_monthly_totals(
    records: Iterable[Subscription],
    window_start: MonthLike,
    window_end: MonthLike,
    today: date,
) -> list[MonthlyTotal]:
    first = to_month_key(window_start)
    last = to_month_key(window_end)
    if month_index(first) > month_index(last):
        raise ValidationError(f"Window start {first} is after window end {last}")

    buckets: dict[str, int] = {key: 0 for key in iter_month_keys(first, last)}
    for record in _overlapping(records, first, last, today):
        for key in _billed_months(record, first, last, today):
            buckets[key] += record.price
    return [MonthlyTotal(month=key, total=total) for key, total in buckets.items()]


def compute_category_totals(
    records: Iterable[Subscription], target_month: MonthLike, today: date
) -> list[CategoryTotal]:
    target = to_month_key(target_month)
    totals: dict[SubscriptionCategory, int] = {}
    for record in _overlapping(records, target, target, today):
        _billed_months(record, target, target, today)
        totals[record.category] = totals.get(record.category, 0) + record.price
    return _sorted_category_totals(totals)


def compute_annual_estimate(
    records: Iterable[Subscription], year: int, today: date
) -> AnnualEstimate:
    """Projected spend for ``year``.

    Active subscriptions are projected through December unless an end date
    cuts them short; ``today`` only matters for records without an end date
    that are already terminated.
    """
    first, last = f"{year:04d}-01", f"{year:04d}-12"
    horizon = date(year, 12, 31)

    projected: list[Subscription] = []
    unbounded: list[Subscription] = []
    for record in _templates(records):
        if record.is_active or record.end_date is not None:
            projected.append(record)
        else:
            unbounded.append(record)
    candidates = [(r, horizon) for r in _overlapping(projected, first, last, horizon)]
    candidates += [(r, today) for r in _overlapping(unbounded, first, last, today)]

    by_category: dict[SubscriptionCategory, list[ServiceEstimate]] = {}
    total_amount = 0
    for record, record_horizon in candidates:
        months = _billed_months(record, first, last, record_horizon)
        amount = record.price * len(months)
        total_amount += amount
        by_category.setdefault(record.category, []).append(
            ServiceEstimate(
                id=record.id,
                name=record.name,
                amount=amount,
                months_used=len(months),
                start_date=record.start_date,
                end_date=record.end_date,
            )
        )

    per_category = [
        CategoryEstimate(
            category=category,
            total_amount=sum(s.amount for s in services),
            per_service=sorted(services, key=lambda s: (-s.amount, s.name)),
        )
        for category, services in by_category.items()
    ]
    per_category.sort(key=lambda c: (-c.total_amount, c.category.value))
    return AnnualEstimate(year=year, total_amount=total_amount, per_category=per_category)


def compute_subscription_summary(
    records: Iterable[Subscription], today: date
) -> SpendSummary:
    current = month_key(today)
    templates = _templates(records)
    billed = _overlapping(templates, current, current, today)
    return SpendSummary(
        month=current,
        monthly_total=sum(r.price for r in billed),
        active_count=sum(1 for r in templates if r.is_active),
        by_category=compute_category_totals(billed, current, today),
    )

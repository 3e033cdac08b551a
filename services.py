from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Callable, Hashable, Optional, TypeVar

from rapidfuzz.distance import Levenshtein
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from aggregation import (
    AnnualEstimate,
    CategoryTotal,
    MonthlyTotal,
    SpendSummary,
    compute_annual_estimate,
    compute_category_totals,
    compute_monthly_totals,
    compute_subscription_summary,
)
from billing import days_in_month, month_key, parse_month_key, to_month_key
from cache import MISS, AggregateCache, NullAggregateCache
from errors import NotFoundError, TransientStoreError, ValidationError
from models import CATEGORY_LABELS, Subscription, SubscriptionCategory
from periods import resolve_window
from rollover import RolloverEngine, RolloverResult
from schemas import SubscriptionCancelIn, SubscriptionIn

logger = logging.getLogger(__name__)

T = TypeVar("T")


def get_current_user_id() -> int:
    return 1


def resolve_category(label: str) -> SubscriptionCategory:
    """Map a value, English label or Japanese label onto a category.

    Falls back to a single-edit fuzzy match; ties are rejected.
    """
    raw = (label or "").strip()
    if not raw:
        raise ValidationError("Category is required")
    needle = raw.lower()

    candidates: dict[str, SubscriptionCategory] = {}
    for category, (english, japanese) in CATEGORY_LABELS.items():
        candidates[category.value] = category
        candidates[english.lower()] = category
        candidates[japanese] = category
    if needle in candidates:
        return candidates[needle]

    best_distance: Optional[int] = None
    best: set[SubscriptionCategory] = set()
    for name, category in candidates.items():
        dist = int(Levenshtein.distance(needle, name))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = {category}
        elif dist == best_distance:
            best.add(category)

    if best_distance is not None and best_distance <= 1:
        if len(best) > 1:
            options = ", ".join(sorted(c.value for c in best))
            raise ValidationError(
                f"Category '{raw}' is ambiguous; matches: {options}"
            )
        return next(iter(best))
    raise ValidationError(f"Unknown category '{raw}'")


class SubscriptionService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        *,
        cache: Optional[AggregateCache] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.cache = cache or NullAggregateCache()

    def list(self, *, include_inactive: bool = False) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(
                Subscription.user_id == self.user_id,
                Subscription.history_month.is_(None),
            )
            .order_by(Subscription.is_active.desc(), Subscription.name)
        )
        if not include_inactive:
            stmt = stmt.where(Subscription.is_active.is_(True))
        return list(self.session.scalars(stmt).all())

    def get(self, subscription_id: str) -> Subscription:
        record = self.session.get(Subscription, subscription_id)
        if not record or record.user_id != self.user_id:
            raise NotFoundError("Subscription not found")
        return record

    def get_template(self, subscription_id: str) -> Subscription:
        record = self.get(subscription_id)
        if record.history_month is not None:
            raise ValidationError("Snapshots cannot be modified")
        return record

    def _ensure_unique_live_name(
        self, name: str, *, exclude_id: Optional[str] = None
    ) -> None:
        stmt = select(Subscription.id).where(
            Subscription.user_id == self.user_id,
            Subscription.name == name,
            Subscription.history_month.is_(None),
            Subscription.is_active.is_(True),
        )
        if exclude_id:
            stmt = stmt.where(Subscription.id != exclude_id)
        if self.session.scalar(stmt.limit(1)):
            raise ValidationError(f"An active subscription named '{name}' already exists")

    def _commit(self) -> None:
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ValidationError("Subscription conflicts with an existing record") from exc
        self.cache.invalidate(self.user_id)

    def create(self, data: SubscriptionIn) -> Subscription:
        category = resolve_category(data.category)
        if data.is_active:
            self._ensure_unique_live_name(data.name)
        record = Subscription(
            id=uuid.uuid4().hex,
            user_id=self.user_id,
            name=data.name,
            price=data.price,
            category=category,
            billing_day=data.billing_day,
            start_date=data.start_date,
            end_date=data.end_date,
            is_active=data.is_active,
            description=data.description,
        )
        self.session.add(record)
        self._commit()
        self.session.refresh(record)
        logger.info(f"subscription_created: id={record.id} user_id={self.user_id}")
        return record

    def update(self, subscription_id: str, data: SubscriptionIn) -> Subscription:
        record = self.get_template(subscription_id)
        category = resolve_category(data.category)
        if data.is_active:
            self._ensure_unique_live_name(data.name, exclude_id=record.id)
        for field, value in data.model_dump().items():
            setattr(record, field, value)
        record.category = category
        self._commit()
        self.session.refresh(record)
        return record

    def cancel(self, subscription_id: str, data: SubscriptionCancelIn) -> Subscription:
        record = self.get_template(subscription_id)
        if data.end_date < record.start_date:
            raise ValidationError("End date must not be before start date")
        record.is_active = False
        record.end_date = data.end_date
        self._commit()
        self.session.refresh(record)
        logger.info(
            f"subscription_cancelled: id={record.id} end_date={data.end_date.isoformat()}"
        )
        return record

    def delete(self, subscription_id: str) -> None:
        record = self.get_template(subscription_id)
        self.session.delete(record)
        self._commit()

    def history(self, subscription_id: str) -> list[Subscription]:
        template = self.get_template(subscription_id)
        stmt = (
            select(Subscription)
            .where(
                Subscription.user_id == self.user_id,
                Subscription.created_from == template.id,
            )
            .order_by(Subscription.history_month.desc())
        )
        return list(self.session.scalars(stmt).all())

    def snapshots_for_month(self, month: str) -> list[Subscription]:
        parse_month_key(month)
        stmt = (
            select(Subscription)
            .where(
                Subscription.user_id == self.user_id,
                Subscription.history_month == month,
            )
            .order_by(Subscription.name)
        )
        return list(self.session.scalars(stmt).all())


class RolloverService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        *,
        cache: Optional[AggregateCache] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.cache = cache or NullAggregateCache()

    def run(self, today: date) -> RolloverResult:
        result = RolloverEngine(self.session).run_rollover(self.user_id, today)
        try:
            self.session.commit()
        except OperationalError as exc:
            self.session.rollback()
            raise TransientStoreError("Could not persist rollover results") from exc
        except IntegrityError as exc:
            # A concurrent run committed first; the next run converges.
            self.session.rollback()
            raise TransientStoreError(
                f"Rollover for user {self.user_id} conflicted with a concurrent run"
            ) from exc
        if result.snapshots_created:
            self.cache.invalidate(self.user_id)
        return result


class AnalyticsService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        *,
        cache: Optional[AggregateCache] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.cache = cache or NullAggregateCache()

    def _templates(self, *, starting_by: Optional[date] = None) -> list[Subscription]:
        stmt = select(Subscription).where(
            Subscription.user_id == self.user_id,
            Subscription.history_month.is_(None),
        )
        if starting_by is not None:
            stmt = stmt.where(Subscription.start_date <= starting_by)
        try:
            return list(self.session.scalars(stmt).all())
        except OperationalError as exc:
            raise TransientStoreError("Record store unavailable") from exc

    def _cached(self, period_key: Hashable, compute: Callable[[], T]) -> T:
        hit = self.cache.get(self.user_id, period_key)
        if hit is not MISS:
            return hit
        result = compute()
        self.cache.put(self.user_id, period_key, result)
        return result

    @staticmethod
    def _month_end(key: str) -> date:
        year, month = parse_month_key(key)
        return date(year, month, days_in_month(year, month))

    def monthly_totals(
        self, window_start: str, window_end: str, *, today: date
    ) -> list[MonthlyTotal]:
        start_key = to_month_key(window_start)
        end_key = to_month_key(window_end)
        key = ("monthly", month_key(today), start_key, end_key)

        def compute() -> list[MonthlyTotal]:
            records = self._templates(starting_by=self._month_end(end_key))
            return compute_monthly_totals(records, start_key, end_key, today)

        return self._cached(key, compute)

    def monthly_totals_for_period(
        self,
        period: Optional[str],
        start: Optional[str],
        end: Optional[str],
        *,
        today: date,
    ) -> list[MonthlyTotal]:
        window = resolve_window(period, start, end, today=today)
        return self.monthly_totals(window.start, window.end, today=today)

    def category_totals(
        self, target_month: Optional[str] = None, *, today: date
    ) -> list[CategoryTotal]:
        target = to_month_key(target_month) if target_month else month_key(today)
        key = ("categories", month_key(today), target)

        def compute() -> list[CategoryTotal]:
            records = self._templates(starting_by=self._month_end(target))
            return compute_category_totals(records, target, today)

        return self._cached(key, compute)

    def annual_estimate(self, year: int, *, today: date) -> AnnualEstimate:
        if not 1970 <= year <= 3000:
            raise ValidationError(f"Invalid year {year}")
        key = ("annual", month_key(today), year)

        def compute() -> AnnualEstimate:
            records = self._templates(starting_by=date(year, 12, 31))
            return compute_annual_estimate(records, year, today)

        return self._cached(key, compute)

    def summary(self, *, today: date) -> SpendSummary:
        key = ("summary", month_key(today))
        return self._cached(
            key, lambda: compute_subscription_summary(self._templates(), today)
        )

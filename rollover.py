import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from billing import due_billing_dates, month_index, month_key, shift_month
from config import get_settings
from errors import TransientStoreError
from models import RolloverMarker, Subscription

logger = logging.getLogger(__name__)

SNAPSHOT_NAMESPACE = uuid.UUID("6f1c2a4e-9b7d-5e3f-8a21-4c0d9e7b3f15")


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def snapshot_id(template_id: str, month: str) -> str:
    return uuid.uuid5(SNAPSHOT_NAMESPACE, f"{template_id}:{month}").hex


@dataclass
class RolloverResult:
    user_id: int
    run_on: date
    previous_run_on: Optional[date] = None
    advanced: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    not_due: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    snapshots_created: int = 0


def users_with_live_templates(session: Session) -> list[int]:
    stmt = (
        select(Subscription.user_id)
        .where(
            Subscription.history_month.is_(None),
            Subscription.is_active.is_(True),
        )
        .distinct()
        .order_by(Subscription.user_id)
    )
    return list(session.scalars(stmt).all())


class RolloverEngine:
    def __init__(
        self, session: Session, *, max_catch_up_months: Optional[int] = None
    ) -> None:
        self.session = session
        if max_catch_up_months is None:
            max_catch_up_months = get_settings().rollover_max_catch_up_months
        self.max_catch_up_months = max_catch_up_months

    def run_rollover(self, user_id: int, today: date) -> RolloverResult:
        try:
            templates = self._live_templates(user_id)
            marker = self.session.get(RolloverMarker, user_id)
        except OperationalError as exc:
            raise TransientStoreError(
                f"Record store unavailable while loading templates for user {user_id}"
            ) from exc

        result = RolloverResult(
            user_id=user_id,
            run_on=today,
            previous_run_on=marker.last_run_on if marker else None,
        )
        floor = shift_month(month_key(today), -self.max_catch_up_months)

        try:
            existing = self._existing_snapshot_ids(templates, floor)
            for template in templates:
                self._roll_template(template, marker, floor, today, existing, result)
            self._touch_marker(user_id, marker, today)
            self.session.flush()
        except OperationalError as exc:
            raise TransientStoreError(
                f"Record store unavailable during rollover for user {user_id}"
            ) from exc

        logger.info(
            f"rollover_run: user_id={user_id} run_on={today.isoformat()} "
            f"advanced={len(result.advanced)} skipped={len(result.skipped)} "
            f"failed={len(result.failed)} snapshots={result.snapshots_created}"
        )
        return result

    def _live_templates(self, user_id: int) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.history_month.is_(None),
                Subscription.is_active.is_(True),
            )
            .order_by(Subscription.created_at, Subscription.id)
        )
        return list(self.session.scalars(stmt).all())

    def _existing_snapshot_ids(
        self, templates: list[Subscription], floor: str
    ) -> set[str]:
        if not templates:
            return set()
        stmt = select(Subscription.id).where(
            Subscription.created_from.in_([t.id for t in templates]),
            Subscription.history_month >= floor,
        )
        return set(self.session.scalars(stmt).all())

    def _scan_start(
        self, template: Subscription, marker: Optional[RolloverMarker], floor: str
    ) -> str:
        start = month_key(template.start_date)
        # Templates untouched since the last run only need the months since
        # that run; new or edited (possibly backdated) ones scan from their start.
        changed_at = template.updated_at or template.created_at
        if marker is not None and changed_at is not None:
            if changed_at <= marker.last_run_at:
                start = max(start, month_key(marker.last_run_on), key=month_index)
        return max(start, floor, key=month_index)

    def _roll_template(
        self,
        template: Subscription,
        marker: Optional[RolloverMarker],
        floor: str,
        today: date,
        existing: set[str],
        result: RolloverResult,
    ) -> None:
        due = due_billing_dates(
            template.start_date,
            template.end_date,
            template.billing_day,
            self._scan_start(template, marker, floor),
            today,
        )
        if not due:
            result.not_due.append(template.id)
            return

        created = 0
        try:
            for month, charge_on in due:
                sid = snapshot_id(template.id, month)
                if sid in existing:
                    continue
                if self._emit_snapshot(template, sid, month, charge_on):
                    existing.add(sid)
                    created += 1
        except OperationalError:
            raise
        except SQLAlchemyError as exc:
            logger.exception(
                f"rollover_template_failed: template_id={template.id} name={template.name}"
            )
            result.failed[template.id] = str(exc)
            result.skipped.append(template.id)
            result.snapshots_created += created
            return

        result.snapshots_created += created
        if created:
            result.advanced.append(template.id)
        else:
            result.skipped.append(template.id)

    def _emit_snapshot(
        self, template: Subscription, sid: str, month: str, charge_on: date
    ) -> bool:
        if self.session.get(Subscription, sid) is not None:
            return False
        snapshot = Subscription(
            id=sid,
            user_id=template.user_id,
            name=template.name,
            price=template.price,
            category=template.category,
            billing_day=template.billing_day,
            start_date=charge_on,
            end_date=charge_on,
            is_active=False,
            history_month=month,
            created_from=template.id,
            description=template.description,
        )
        try:
            with self.session.begin_nested():
                self.session.add(snapshot)
                self.session.flush()
        except IntegrityError:
            # A concurrent run wrote the same deterministic id first.
            logger.info(f"rollover_snapshot_exists: template_id={template.id} month={month}")
            return False
        return True

    def _touch_marker(
        self, user_id: int, marker: Optional[RolloverMarker], today: date
    ) -> None:
        now = datetime.utcnow()
        if marker is None:
            try:
                with self.session.begin_nested():
                    self.session.add(
                        RolloverMarker(user_id=user_id, last_run_on=today, last_run_at=now)
                    )
                    self.session.flush()
                return
            except IntegrityError:
                # A concurrent first run created the marker; update that row.
                marker = self.session.get(RolloverMarker, user_id)
                if marker is None:
                    raise
        if today >= marker.last_run_on:
            marker.last_run_on = today
        marker.last_run_at = now

from datetime import date

import pytest
from pydantic import ValidationError as SchemaValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import NotFoundError, ValidationError
from models import RecordKind, SubscriptionCategory
from schemas import SubscriptionCancelIn, SubscriptionIn
from services import (
    RolloverService,
    SubscriptionService,
    resolve_category,
)


def _engine():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


def _payload(**overrides) -> SubscriptionIn:
    data = dict(
        name="Netflix",
        price=1490,
        category="Video",
        billing_day=15,
        start_date=date(2024, 1, 15),
    )
    data.update(overrides)
    return SubscriptionIn(**data)


@pytest.mark.parametrize(
    "label, expected",
    [
        ("video", SubscriptionCategory.video),
        ("Music", SubscriptionCategory.music),
        ("クラウドストレージ", SubscriptionCategory.storage),
        ("その他", SubscriptionCategory.other),
        ("  LEARNING ", SubscriptionCategory.learning),
        ("musc", SubscriptionCategory.music),
        ("storag", SubscriptionCategory.storage),
    ],
)
def test_resolve_category_accepts_labels(label: str, expected) -> None:
    assert resolve_category(label) == expected


def test_resolve_category_rejects_unknown() -> None:
    with pytest.raises(ValidationError):
        resolve_category("podcast")
    with pytest.raises(ValidationError):
        resolve_category("   ")


def test_schema_rejects_bad_input() -> None:
    with pytest.raises(SchemaValidationError):
        _payload(price=-1)
    with pytest.raises(SchemaValidationError):
        _payload(billing_day=32)
    with pytest.raises(SchemaValidationError):
        _payload(end_date=date(2023, 12, 31))
    with pytest.raises(SchemaValidationError):
        _payload(is_active=False)
    with pytest.raises(SchemaValidationError):
        _payload(name="   ")


def test_create_and_list_templates() -> None:
    engine = _engine()
    with Session(engine) as session:
        service = SubscriptionService(session)
        created = service.create(_payload(category="動画配信"))
        assert created.kind == RecordKind.template
        assert created.category == SubscriptionCategory.video
        assert created.created_at is not None

        service.create(_payload(name="Spotify", category="music", price=980))
        assert [s.name for s in service.list()] == ["Netflix", "Spotify"]


def test_live_template_name_is_unique_per_owner() -> None:
    engine = _engine()
    with Session(engine) as session:
        service = SubscriptionService(session)
        first = service.create(_payload())
        with pytest.raises(ValidationError):
            service.create(_payload(price=990))

        # Another owner may reuse the name.
        SubscriptionService(session, 2).create(_payload())

        service.cancel(first.id, SubscriptionCancelIn(end_date=date(2024, 6, 30)))
        again = service.create(_payload(start_date=date(2024, 9, 1)))
        assert again.id != first.id
        assert [s.id for s in service.list()] == [again.id]
        assert {s.id for s in service.list(include_inactive=True)} == {first.id, again.id}


def test_cancel_sets_end_date_and_deactivates() -> None:
    engine = _engine()
    with Session(engine) as session:
        service = SubscriptionService(session)
        created = service.create(_payload())
        cancelled = service.cancel(
            created.id, SubscriptionCancelIn(end_date=date(2024, 5, 20))
        )
        assert cancelled.is_active is False
        assert cancelled.end_date == date(2024, 5, 20)

        with pytest.raises(ValidationError):
            service.cancel(created.id, SubscriptionCancelIn(end_date=date(2023, 1, 1)))


def test_update_changes_template_in_place() -> None:
    engine = _engine()
    with Session(engine) as session:
        service = SubscriptionService(session)
        created = service.create(_payload())
        updated = service.update(
            created.id, _payload(price=1590, category="ニュース", billing_day=31)
        )
        assert updated.id == created.id
        assert updated.price == 1590
        assert updated.category == SubscriptionCategory.news
        assert updated.billing_day == 31


def test_other_users_records_are_not_found() -> None:
    engine = _engine()
    with Session(engine) as session:
        created = SubscriptionService(session, 1).create(_payload())
        other = SubscriptionService(session, 2)
        with pytest.raises(NotFoundError):
            other.get(created.id)
        with pytest.raises(NotFoundError):
            other.delete(created.id)
        with pytest.raises(NotFoundError):
            other.get("missing")


def test_history_lists_snapshots_and_snapshots_are_read_only() -> None:
    engine = _engine()
    with Session(engine) as session:
        service = SubscriptionService(session)
        created = service.create(_payload())
        RolloverService(session).run(date(2024, 3, 20))

        history = service.history(created.id)
        assert [s.history_month for s in history] == ["2024-03", "2024-02", "2024-01"]
        assert all(s.kind == RecordKind.snapshot for s in history)
        assert [s.name for s in service.snapshots_for_month("2024-02")] == ["Netflix"]

        with pytest.raises(ValidationError):
            service.update(history[0].id, _payload())
        with pytest.raises(ValidationError):
            service.snapshots_for_month("2024-2")


def test_delete_removes_template() -> None:
    engine = _engine()
    with Session(engine) as session:
        service = SubscriptionService(session)
        created = service.create(_payload())
        service.delete(created.id)
        assert service.list(include_inactive=True) == []

from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class SubscriptionCategory(str, Enum):
    video = "video"
    music = "music"
    game = "game"
    learning = "learning"
    news = "news"
    storage = "storage"
    other = "other"


# English and Japanese display labels accepted at the input boundary.
CATEGORY_LABELS: dict[SubscriptionCategory, tuple[str, str]] = {
    SubscriptionCategory.video: ("Video", "動画配信"),
    SubscriptionCategory.music: ("Music", "音楽配信"),
    SubscriptionCategory.game: ("Game", "ゲーム"),
    SubscriptionCategory.learning: ("Learning", "学習"),
    SubscriptionCategory.news: ("News", "ニュース"),
    SubscriptionCategory.storage: ("Storage", "クラウドストレージ"),
    SubscriptionCategory.other: ("Other", "その他"),
}


class RecordKind(str, Enum):
    template = "template"
    snapshot = "snapshot"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Subscription(Base, TimestampMixin):
    """A live template (``history_month`` null) or a monthly snapshot."""

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[SubscriptionCategory] = mapped_column(
        SAEnum(SubscriptionCategory), nullable=False
    )
    billing_day: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    history_month: Mapped[Optional[str]] = mapped_column(String(7))
    created_from: Mapped[Optional[str]] = mapped_column(String(32))
    description: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_subscription_price_positive"),
        CheckConstraint(
            "billing_day >= 1 AND billing_day <= 31",
            name="ck_subscription_billing_day_range",
        ),
        UniqueConstraint(
            "created_from", "history_month", name="uq_subscription_snapshot_month"
        ),
        Index(
            "uq_subscription_live_owner_name",
            "user_id",
            "name",
            unique=True,
            sqlite_where=text("history_month IS NULL AND is_active = 1"),
            postgresql_where=text("history_month IS NULL AND is_active"),
        ),
        Index("ix_subscriptions_user_history", "user_id", "history_month"),
        Index("ix_subscriptions_user_active", "user_id", "is_active"),
    )

    @property
    def kind(self) -> RecordKind:
        if self.history_month is None:
            return RecordKind.template
        return RecordKind.snapshot

    @property
    def is_live_template(self) -> bool:
        return self.kind == RecordKind.template and self.is_active


class RolloverMarker(Base, TimestampMixin):
    __tablename__ = "rollover_markers"

    user_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    last_run_on: Mapped[date] = mapped_column(Date, nullable=False)
    last_run_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import RecordKind, SubscriptionCategory


class SubscriptionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=120)
    price: int = Field(..., ge=0)
    # Free-form label, resolved to SubscriptionCategory by the service layer.
    category: str = Field(..., min_length=1, max_length=40)
    billing_day: int = Field(..., ge=1, le=31)
    start_date: date
    end_date: Optional[date] = None
    is_active: bool = True
    description: Optional[str] = Field(default=None, max_length=500)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name must not be blank")
        return value

    @model_validator(mode="after")
    def _check_dates(self) -> "SubscriptionIn":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("End date must not be before start date")
        if not self.is_active and self.end_date is None:
            raise ValueError("Inactive subscriptions require an end date")
        return self


class SubscriptionCancelIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    end_date: date


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: int
    kind: RecordKind
    name: str
    price: int
    category: SubscriptionCategory
    billing_day: int
    start_date: date
    end_date: Optional[date]
    is_active: bool
    history_month: Optional[str]
    created_from: Optional[str]
    description: Optional[str]
    created_at: datetime
    updated_at: datetime


class CategoryOut(BaseModel):
    value: SubscriptionCategory
    label: str
    label_ja: str

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from promo_engine.models.promotion import PromotionAdminState, PromotionDisplayStatus, PromotionKind


def _assume_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PromotionCreate(BaseModel):
    # Range checks live in services.promotion_rules so every violation is reported at once.
    code: str
    name: str
    kind: PromotionKind
    value: Decimal = Decimal("0")
    min_spend: Decimal = Decimal("50")
    max_discount: Decimal = Decimal("0")
    usage_limit: int = 0
    admin_state: PromotionAdminState = PromotionAdminState.active
    starts_at: datetime | None = None
    ends_at: datetime | None = None

    @field_validator("starts_at", "ends_at")
    @classmethod
    def validate_timezone(cls, value: datetime | None) -> datetime | None:
        return _assume_utc(value)


class PromotionUpdate(BaseModel):
    code: str | None = None
    name: str | None = None
    kind: PromotionKind | None = None
    value: Decimal | None = None
    min_spend: Decimal | None = None
    max_discount: Decimal | None = None
    usage_limit: int | None = None
    admin_state: PromotionAdminState | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None

    @field_validator("starts_at", "ends_at")
    @classmethod
    def validate_timezone(cls, value: datetime | None) -> datetime | None:
        return _assume_utc(value)


class PromotionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    name: str
    kind: PromotionKind
    value: Decimal
    min_spend: Decimal
    max_discount: Decimal
    usage_limit: int
    used: int
    admin_state: PromotionAdminState
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    status: PromotionDisplayStatus | None = None


class PromotionFilters(BaseModel):
    archived: bool = False
    status: PromotionDisplayStatus | None = None
    kind: PromotionKind | None = None
    query: str | None = Field(default=None, max_length=120)


class PromotionDuplicateRequest(BaseModel):
    code: str | None = None


class PromotionToggleRequest(BaseModel):
    force_activate: bool = False


class PromotionReactivateRequest(BaseModel):
    starts_at: datetime
    ends_at: datetime

    @field_validator("starts_at", "ends_at")
    @classmethod
    def validate_timezone(cls, value: datetime) -> datetime:
        return _assume_utc(value)


class PromotionApplyRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    order_total: Decimal = Field(ge=0)
    order_id: str = Field(min_length=1, max_length=64)


class DiscountResultRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    eligible: bool
    discount_amount: Decimal = Decimal("0.00")
    waive_shipping: bool = False


class PromotionRedemptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    promotion_id: UUID
    order_id: str
    used_after: int
    discount_amount: Decimal
    waive_shipping: bool
    redeemed_at: datetime

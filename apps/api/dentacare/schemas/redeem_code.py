"""Redeem code schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import Field, field_validator, model_validator

from dentacare.db.enums import DiscountKind, RedeemApplicability
from dentacare.schemas.common import CamelModel

CODE_PATTERN = r"^[A-Za-z0-9_-]{3,50}$"


class RedeemCodeCreate(CamelModel):
    code: str = Field(pattern=CODE_PATTERN)
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    discount_kind: DiscountKind
    value: int = Field(ge=0)
    min_order_cents: int = Field(default=0, ge=0)
    max_discount_cents: int | None = Field(default=None, ge=0)
    usage_limit: int | None = Field(default=None, ge=1)
    per_user_limit: int = Field(default=1, ge=1)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    active: bool = True
    applicability: RedeemApplicability = RedeemApplicability.ALL

    @field_validator("code")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def _check_terms(self):
        if self.discount_kind == DiscountKind.PERCENT and self.value > 100:
            raise ValueError("Percentage discount cannot exceed 100")
        if self.valid_from and self.valid_until and self.valid_from >= self.valid_until:
            raise ValueError("validFrom must be before validUntil")
        return self


class RedeemCodeUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    discount_kind: DiscountKind | None = None
    value: int | None = Field(default=None, ge=0)
    min_order_cents: int | None = Field(default=None, ge=0)
    max_discount_cents: int | None = Field(default=None, ge=0)
    usage_limit: int | None = Field(default=None, ge=1)
    per_user_limit: int | None = Field(default=None, ge=1)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    active: bool | None = None
    applicability: RedeemApplicability | None = None


class RedeemCodeRead(CamelModel):
    id: UUID
    code: str
    name: str
    description: str | None
    discount_kind: str
    value: int
    min_order_cents: int
    max_discount_cents: int | None
    usage_limit: int | None
    usage_count: int
    per_user_limit: int
    valid_from: datetime | None
    valid_until: datetime | None
    active: bool
    applicability: str
    created_at: datetime


class RedeemQuoteRead(CamelModel):
    code: str
    price_cents: int
    discount_cents: int
    final_cents: int


class RedemptionRead(CamelModel):
    id: UUID
    user_id: UUID
    payment_id: UUID
    appointment_id: UUID
    original_cents: int
    discount_cents: int
    final_cents: int
    created_at: datetime


class RedeemCodeStatsRead(CamelModel):
    redeem_code: RedeemCodeRead
    valid_now: bool
    total_usage: int
    in_flight: int
    remaining_usage: int | None
    total_discount_cents: int
    total_original_cents: int
    average_discount_cents: int
    history: list[RedemptionRead]
    total: int
    page: int
    per_page: int
    pages: int

"""Payment schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import Field, field_validator

from dentacare.db.enums import PaymentMethod
from dentacare.schemas.common import CamelModel


class PaymentInitiateRequest(CamelModel):
    appointment_id: UUID
    method: PaymentMethod = PaymentMethod.PAY_PAGE
    redeem_code: str | None = Field(default=None, max_length=50)

    @field_validator("method", mode="before")
    @classmethod
    def _lower_method(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value


class PaymentInitiateRead(CamelModel):
    payment_id: UUID
    merchant_txn_id: str
    redirect_target: str | None
    payment_status: str
    appointment_status: str
    amount_cents: int
    discount_cents: int
    currency: str


class PaymentStatusRead(CamelModel):
    payment_id: UUID
    appointment_id: UUID
    merchant_txn_id: str
    payment_status: str
    appointment_status: str
    room_id: str | None = None


class PaymentRead(CamelModel):
    id: UUID
    appointment_id: UUID
    merchant_txn_id: str
    amount_cents: int
    discount_cents: int
    currency: str
    method: str
    status: str
    failure_reason: str | None
    created_at: datetime
    completed_at: datetime | None
    receipt_url: str | None = None


class RefundRequest(CamelModel):
    reason: str | None = Field(default=None, max_length=500)


class ReconciliationRead(CamelModel):
    id: UUID
    payment_id: UUID
    appointment_id: UUID
    reason: str
    observed_status: str
    recorded_status: str
    resolved: bool
    created_at: datetime


class AdminPaymentRead(PaymentRead):
    user_id: UUID
    appointment_status: str
    scheduled_at: datetime


class AdminPaymentList(CamelModel):
    items: list[AdminPaymentRead]
    total: int
    page: int
    per_page: int
    pages: int


class PaymentStatusCount(CamelModel):
    status: str
    count: int
    total_cents: int


class PaymentMethodCount(CamelModel):
    method: str
    count: int


class PaymentStatsRead(CamelModel):
    from_at: datetime
    to_at: datetime
    revenue_cents: int
    transactions: int
    by_status: list[PaymentStatusCount]
    by_method: list[PaymentMethodCount]

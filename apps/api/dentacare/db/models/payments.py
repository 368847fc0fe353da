"""SQLAlchemy ORM models."""

from __future__ import annotations

from typing import TYPE_CHECKING

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dentacare.db.base import Base
from dentacare.db.enums import (
    NON_TERMINAL_PAYMENT_STATUSES,
    PaymentMethod,
    PaymentStatus,
)
from dentacare.db.types import JSONType, utcnow

if TYPE_CHECKING:
    from dentacare.db.models import Appointment

_ACTIVE_PAYMENT_SQL = "status IN ({})".format(
    ", ".join(
        f"'{s.value}'"
        for s in sorted(NON_TERMINAL_PAYMENT_STATUSES, key=lambda s: s.value)
    )
)


class Payment(Base):
    """
    One settlement attempt for an appointment.

    merchant_txn_id is chosen by us, shared with the gateway and never
    changes. At most one payment per appointment may be non-terminal.
    """

    __tablename__ = "payments"
    __table_args__ = (
        Index(
            "uq_payment_active_per_appointment",
            "appointment_id",
            unique=True,
            postgresql_where=text(_ACTIVE_PAYMENT_SQL),
            sqlite_where=text(_ACTIVE_PAYMENT_SQL),
        ),
        Index("idx_payments_user", "user_id", "created_at"),
        Index("idx_payments_status_updated", "status", "updated_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    merchant_txn_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    gateway_order_id: Mapped[str | None] = mapped_column(
        String(128), unique=True, nullable=True
    )

    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="INR", nullable=False)
    method: Mapped[str] = mapped_column(
        String(20), default=PaymentMethod.PAY_PAGE.value, nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), default=PaymentStatus.CREATED.value, nullable=False
    )
    redeem_code_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("redeem_codes.id", ondelete="SET NULL"), nullable=True
    )

    redirect_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    gateway_raw_response: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    receipt_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    initiated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    checksum_verified_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_polled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    appointment: Mapped["Appointment"] = relationship()

    @property
    def status_enum(self) -> PaymentStatus:
        return PaymentStatus(self.status)

    @property
    def is_active(self) -> bool:
        return self.status_enum in NON_TERMINAL_PAYMENT_STATUSES


class PaymentEvent(Base):
    """
    Append-only transition log.

    (payment_id, to_status) is unique: a payment reaches each state at most
    once, so replaying a transition cannot double-apply its effects.
    """

    __tablename__ = "payment_events"
    __table_args__ = (
        UniqueConstraint("payment_id", "to_status", name="uq_payment_event_target"),
        Index("idx_payment_events_payment", "payment_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False
    )
    from_status: Mapped[str] = mapped_column(String(20), nullable=False)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class PaymentReconciliation(Base):
    """Admin-visible record of a callback that disagreed with stored state."""

    __tablename__ = "payment_reconciliations"
    __table_args__ = (
        Index("idx_payment_reconciliations_open", "resolved", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False
    )
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False
    )
    reason: Mapped[str] = mapped_column(String(40), nullable=False)
    observed_status: Mapped[str] = mapped_column(String(20), nullable=False)
    recorded_status: Mapped[str] = mapped_column(String(20), nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

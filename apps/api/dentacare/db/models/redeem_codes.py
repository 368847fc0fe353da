"""SQLAlchemy ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from dentacare.db.base import Base
from dentacare.db.enums import DiscountKind, RedeemApplicability
from dentacare.db.types import utcnow


class RedeemCode(Base):
    """
    Admin-managed discount coupon.

    ``code`` is stored upper-cased, which makes the unique constraint
    case-insensitive. ``value`` is a percentage for percent codes and an
    amount in cents for flat codes.
    """

    __tablename__ = "redeem_codes"
    __table_args__ = (
        CheckConstraint("value >= 0", name="ck_redeem_value_non_negative"),
        CheckConstraint(
            "valid_until IS NULL OR valid_from IS NULL OR valid_from < valid_until",
            name="ck_redeem_validity_range",
        ),
        Index("idx_redeem_codes_active", "active", "valid_until"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    discount_kind: Mapped[str] = mapped_column(
        String(10), default=DiscountKind.PERCENT.value, nullable=False
    )
    value: Mapped[int] = mapped_column(Integer, nullable=False)
    min_order_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_discount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)

    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    per_user_limit: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    valid_from: Mapped[datetime | None] = mapped_column(nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    applicability: Mapped[str] = mapped_column(
        String(20), default=RedeemApplicability.ALL.value, nullable=False
    )

    created_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class RedemptionRecord(Base):
    """One successful use of a redeem code (exactly one per payment)."""

    __tablename__ = "redemption_records"
    __table_args__ = (
        Index("idx_redemption_records_code_user", "redeem_code_id", "user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    redeem_code_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("redeem_codes.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payments.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False
    )
    original_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    final_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

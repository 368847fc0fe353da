"""SQLAlchemy ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime, time

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, String, Time, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from dentacare.db.base import Base
from dentacare.db.types import JSONType, utcnow


class AdminServiceWindow(Base):
    """
    Local-time interval in which virtual appointments may be scheduled.

    One row per admin; bookings use the earliest-created active row.
    """

    __tablename__ = "admin_service_windows"
    __table_args__ = (
        CheckConstraint("start_of_day < end_of_day", name="ck_service_window_order"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    start_of_day: Mapped[time] = mapped_column(Time, nullable=False)
    end_of_day: Mapped[time] = mapped_column(Time, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), default="Asia/Kolkata", nullable=False)
    alert_emails: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

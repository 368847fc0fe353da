"""SQLAlchemy ORM models."""

from __future__ import annotations

from typing import TYPE_CHECKING

import uuid
from datetime import datetime, timedelta

from sqlalchemy import ForeignKey, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dentacare.db.base import Base
from dentacare.db.enums import (
    DEFAULT_APPOINTMENT_STATUS,
    AppointmentKind,
    AppointmentStatus,
    SLOT_HOLDING_STATUSES,
)
from dentacare.db.types import utcnow

if TYPE_CHECKING:
    from dentacare.db.models import User

_SLOT_HOLDING_SQL = "status IN ({})".format(
    ", ".join(f"'{s.value}'" for s in sorted(SLOT_HOLDING_STATUSES, key=lambda s: s.value))
)


class Appointment(Base):
    """
    A booked consultation slot.

    The partial unique index on (doctor_id, scheduled_at) is the final
    arbiter of slot ownership: only pending_payment and confirmed rows hold
    a slot, so expiring or cancelling an appointment releases it.
    """

    __tablename__ = "appointments"
    __table_args__ = (
        Index(
            "uq_appointment_doctor_slot",
            "doctor_id",
            "scheduled_at",
            unique=True,
            postgresql_where=text(_SLOT_HOLDING_SQL),
            sqlite_where=text(_SLOT_HOLDING_SQL),
        ),
        Index("idx_appointments_patient", "patient_id", "created_at"),
        Index("idx_appointments_status_scheduled", "status", "scheduled_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    # Nullable only for unassigned in-person bookings
    doctor_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    kind: Mapped[str] = mapped_column(
        String(20), default=AppointmentKind.VIRTUAL.value, nullable=False
    )
    scheduled_at: Mapped[datetime] = mapped_column(nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=DEFAULT_APPOINTMENT_STATUS.value, nullable=False
    )

    # Non-null iff confirmed virtual appointment
    room_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="INR", nullable=False)
    redeem_code_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("redeem_codes.id", ondelete="SET NULL"), nullable=True
    )
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    confirmed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Relationships
    patient: Mapped["User"] = relationship(foreign_keys=[patient_id])
    doctor: Mapped["User"] = relationship(foreign_keys=[doctor_id])

    @property
    def status_enum(self) -> AppointmentStatus:
        return AppointmentStatus(self.status)

    @property
    def kind_enum(self) -> AppointmentKind:
        return AppointmentKind(self.kind)

    @property
    def is_virtual(self) -> bool:
        return self.kind == AppointmentKind.VIRTUAL.value

    @property
    def ends_at(self) -> datetime:
        return self.scheduled_at + timedelta(minutes=self.duration_minutes)

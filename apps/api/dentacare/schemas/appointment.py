"""Appointment schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import Field, field_validator

from dentacare.schemas.common import CamelModel


class VirtualAppointmentCreate(CamelModel):
    """Book a virtual appointment. ``patientRef`` is honoured for admins only."""

    doctor_ref: UUID | None = None
    scheduled_at: datetime
    redeem_code: str | None = Field(default=None, max_length=50)
    patient_ref: UUID | None = None

    @field_validator("redeem_code")
    @classmethod
    def _strip_code(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None


class AppointmentCreatedRead(CamelModel):
    appointment_id: UUID
    doctor_ref: UUID | None
    scheduled_at: datetime
    status: str
    price_cents: int
    discount_cents: int
    final_cents: int
    currency: str


class AppointmentRead(CamelModel):
    id: UUID
    patient_ref: UUID
    doctor_ref: UUID | None
    kind: str
    scheduled_at: datetime
    duration_minutes: int
    status: str
    room_id: str | None
    price_cents: int
    currency: str
    cancellation_reason: str | None
    created_at: datetime
    confirmed_at: datetime | None


class AppointmentCancelRead(CamelModel):
    appointment_id: UUID
    appointment_status: str
    payment_status: str | None = None

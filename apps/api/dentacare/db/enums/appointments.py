"""Appointment enums."""

from enum import Enum


class AppointmentKind(str, Enum):
    IN_PERSON = "in_person"
    VIRTUAL = "virtual"


class AppointmentStatus(str, Enum):
    """
    Appointment lifecycle status.

    Flow: pending_payment → confirmed → completed
                  ↘ expired      ↘ cancelled
                  ↘ cancelled
    """

    PENDING_PAYMENT = "pending_payment"  # Slot held, awaiting settlement
    CONFIRMED = "confirmed"  # Paid, room minted for virtual
    CANCELLED = "cancelled"
    EXPIRED = "expired"  # Hold released (failure, timeout, sweep)
    COMPLETED = "completed"


# Statuses that occupy the (doctor_id, scheduled_at) slot
SLOT_HOLDING_STATUSES = frozenset(
    {AppointmentStatus.PENDING_PAYMENT, AppointmentStatus.CONFIRMED}
)

DEFAULT_APPOINTMENT_STATUS = AppointmentStatus.PENDING_PAYMENT

"""Enum definitions for application constants."""

from dentacare.db.enums.appointments import (
    AppointmentKind,
    AppointmentStatus,
    DEFAULT_APPOINTMENT_STATUS,
    SLOT_HOLDING_STATUSES,
)
from dentacare.db.enums.auth import DOCTOR_ROLES, Role
from dentacare.db.enums.jobs import DEFAULT_JOB_STATUS, JobStatus, JobType
from dentacare.db.enums.payments import (
    GatewayStatus,
    NON_TERMINAL_PAYMENT_STATUSES,
    PaymentEventSource,
    PaymentMethod,
    PaymentStatus,
    ReconciliationReason,
)
from dentacare.db.enums.redeem import DiscountKind, RedeemApplicability

__all__ = [
    "AppointmentKind",
    "AppointmentStatus",
    "DEFAULT_APPOINTMENT_STATUS",
    "SLOT_HOLDING_STATUSES",
    "DOCTOR_ROLES",
    "Role",
    "DEFAULT_JOB_STATUS",
    "JobStatus",
    "JobType",
    "GatewayStatus",
    "NON_TERMINAL_PAYMENT_STATUSES",
    "PaymentEventSource",
    "PaymentMethod",
    "PaymentStatus",
    "ReconciliationReason",
    "DiscountKind",
    "RedeemApplicability",
]

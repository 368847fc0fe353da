"""Appointment service - virtual booking and lookups."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.orm import Session

from dentacare.core.clock import Clock
from dentacare.core.config import Settings, settings as default_settings
from dentacare.core.errors import NotFound, PermissionDenied, PolicyViolation
from dentacare.db.enums import AppointmentKind, Role
from dentacare.db.models import Appointment, User
from dentacare.schemas.appointment import VirtualAppointmentCreate
from dentacare.schemas.auth import AuthContext
from dentacare.services import (
    policy_engine,
    price_service,
    redeem_code_service,
    reservation_service,
    service_window_service,
)
from dentacare.services.policy_engine import Operation, ResourceRef, authorise

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookingResult:
    appointment: Appointment
    discount_cents: int
    final_cents: int


def _resolve_patient(db: Session, actor: AuthContext, patient_ref: UUID | None) -> UUID:
    """Patients book for themselves; admins book on behalf of a patient."""
    if not actor.is_admin:
        if patient_ref is not None and patient_ref != actor.user_id:
            raise PermissionDenied("Patients can only book for themselves")
        return actor.user_id
    if patient_ref is None:
        raise PolicyViolation("patientRef is required when an admin books")
    patient = db.query(User).filter(User.id == patient_ref).first()
    if not patient or not patient.is_active:
        raise NotFound("Patient not found")
    if patient.role != Role.PATIENT.value:
        raise PolicyViolation("patientRef must reference a patient")
    return patient.id


def book_virtual(
    db: Session,
    actor: AuthContext,
    data: VirtualAppointmentCreate,
    *,
    clock: Clock,
    config: Settings = default_settings,
) -> BookingResult:
    """
    Validate and hold a virtual slot.

    Window and redeem checks run before the slot is taken; the code is
    only quoted here and counted when the payment settles.
    """
    authorise(actor, Operation.CREATE_VIRTUAL_APPOINTMENT)
    now = clock.now()
    patient_id = _resolve_patient(db, actor, data.patient_ref)

    scheduled_at = policy_engine.normalise_scheduled_at(data.scheduled_at)
    window = service_window_service.get_effective_window(db, config)
    policy_engine.check_service_window(
        scheduled_at, window, now, policy_engine.BookingLimits.from_settings(config)
    )

    price = price_service.current_virtual_price(db, config)
    discount = 0
    code_id = None
    if data.redeem_code:
        code, quote = redeem_code_service.quote(
            db,
            data.redeem_code,
            user_id=patient_id,
            price_cents=price,
            now=now,
            kind=AppointmentKind.VIRTUAL,
        )
        discount = quote.discount_cents
        code_id = code.id
    # Release read locks and snapshots before reserving
    db.commit()

    appointment = reservation_service.reserve(
        db,
        patient_id=patient_id,
        doctor_id=data.doctor_ref,
        scheduled_at=scheduled_at,
        price_cents=price,
        currency=config.PAYMENT_CURRENCY,
        duration_minutes=config.VIRTUAL_APPOINTMENT_DURATION_MINUTES,
        now=now,
        kind=AppointmentKind.VIRTUAL,
        redeem_code_id=code_id,
    )
    return BookingResult(
        appointment=appointment,
        discount_cents=discount,
        final_cents=price - discount,
    )


def get_appointment(db: Session, appointment_id: UUID, actor: AuthContext) -> Appointment:
    appointment = db.query(Appointment).filter(Appointment.id == appointment_id).first()
    if appointment is None:
        raise NotFound("Appointment not found")
    authorise(
        actor,
        Operation.VIEW_APPOINTMENT,
        ResourceRef(owner_id=appointment.patient_id, doctor_id=appointment.doctor_id),
    )
    return appointment

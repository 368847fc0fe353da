"""Appointments router - virtual booking, detail and cancellation."""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from dentacare.core.clock import Clock
from dentacare.core.config import settings
from dentacare.core.deps import get_clock, get_current_session, get_db, get_payment_orchestrator
from dentacare.schemas.appointment import (
    AppointmentCancelRead,
    AppointmentCreatedRead,
    AppointmentRead,
    VirtualAppointmentCreate,
)
from dentacare.schemas.auth import AuthContext
from dentacare.schemas.common import Envelope, external_status, ok
from dentacare.services import appointment_service
from dentacare.services.payment_service import PaymentOrchestrator

router = APIRouter()


def _appointment_to_read(appointment) -> AppointmentRead:
    return AppointmentRead(
        id=appointment.id,
        patient_ref=appointment.patient_id,
        doctor_ref=appointment.doctor_id,
        kind=appointment.kind,
        scheduled_at=appointment.scheduled_at,
        duration_minutes=appointment.duration_minutes,
        status=external_status(appointment.status),
        room_id=appointment.room_id,
        price_cents=appointment.price_cents,
        currency=appointment.currency,
        cancellation_reason=appointment.cancellation_reason,
        created_at=appointment.created_at,
        confirmed_at=appointment.confirmed_at,
    )


@router.post("/virtual", status_code=201, response_model=Envelope[AppointmentCreatedRead])
def create_virtual_appointment(
    data: VirtualAppointmentCreate,
    session: AuthContext = Depends(get_current_session),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """
    Hold a virtual slot in PENDING_PAYMENT.

    The slot stays held until the payment settles or the hold expires.
    """
    result = appointment_service.book_virtual(db, session, data, clock=clock, config=settings)
    appointment = result.appointment
    return ok(
        AppointmentCreatedRead(
            appointment_id=appointment.id,
            doctor_ref=appointment.doctor_id,
            scheduled_at=appointment.scheduled_at,
            status=external_status(appointment.status),
            price_cents=appointment.price_cents,
            discount_cents=result.discount_cents,
            final_cents=result.final_cents,
            currency=appointment.currency,
        ),
        message="Appointment reserved",
        code=201,
    )


@router.get("/{appointment_id}", response_model=Envelope[AppointmentRead])
def get_appointment(
    appointment_id: UUID,
    session: AuthContext = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    appointment = appointment_service.get_appointment(db, appointment_id, session)
    return ok(_appointment_to_read(appointment))


@router.post("/{appointment_id}/cancel", response_model=Envelope[AppointmentCancelRead])
async def cancel_appointment(
    appointment_id: UUID,
    session: AuthContext = Depends(get_current_session),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Cancel a held or confirmed appointment (owner or admin)."""
    outcome = await orchestrator.cancel(appointment_id, session)
    return ok(
        AppointmentCancelRead(
            appointment_id=outcome.appointment.id,
            appointment_status=external_status(outcome.appointment.status),
            payment_status=external_status(outcome.payment.status) if outcome.payment else None,
        ),
        message="Appointment cancelled",
    )

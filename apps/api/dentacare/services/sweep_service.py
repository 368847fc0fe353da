"""Hold sweep - expire stale payment holds and complete past appointments.

Run by the worker every SWEEP_INTERVAL_SECONDS and by the internal cron
endpoint. Each row is re-checked under lock, so concurrent sweeps and
late callbacks do not double-apply.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from sqlalchemy import exists
from sqlalchemy.orm import Session

from dentacare.core.config import Settings, settings as default_settings
from dentacare.db.enums import AppointmentStatus, PaymentEventSource, PaymentStatus
from dentacare.db.models import Appointment, Payment
from dentacare.db.session import is_postgres
from dentacare.services import payment_service

logger = logging.getLogger(__name__)

_STALE_PAYMENT_STATUSES = [PaymentStatus.CREATED.value, PaymentStatus.INITIATED.value]
_ACTIVE_PAYMENT_STATUSES = [
    PaymentStatus.CREATED.value,
    PaymentStatus.INITIATED.value,
    PaymentStatus.PROCESSING.value,
]
SWEEP_REASON = "payment_hold_expired"


@dataclass
class SweepResult:
    payments_expired: int = 0
    appointments_expired: int = 0
    appointments_completed: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def _locked(query, db: Session):
    if is_postgres(db):
        return query.with_for_update(skip_locked=True)
    return query


def _expire_stale_payments(db: Session, cutoff: datetime, now: datetime, result: SweepResult) -> None:
    stale_ids = [
        payment_id
        for (payment_id,) in db.query(Payment.id)
        .filter(
            Payment.status.in_(_STALE_PAYMENT_STATUSES),
            Payment.created_at <= cutoff,
        )
        .all()
    ]
    db.commit()
    for payment_id in stale_ids:
        payment, appointment = payment_service.lock_payment_pair(db, payment_id)
        if payment.status not in _STALE_PAYMENT_STATUSES:
            db.commit()
            continue
        payment_service.record_payment_transition(
            db, payment, PaymentStatus.EXPIRED, source=PaymentEventSource.SWEEP, now=now
        )
        payment.failure_reason = SWEEP_REASON
        result.payments_expired += 1
        if appointment.status_enum == AppointmentStatus.PENDING_PAYMENT:
            payment_service.settle_failure(db, appointment, PaymentStatus.EXPIRED, now=now)
            result.appointments_expired += 1
        db.commit()


def _expire_unpaid_holds(db: Session, cutoff: datetime, now: datetime, result: SweepResult) -> None:
    """PENDING_PAYMENT appointments that never got an active payment."""
    has_active_payment = exists().where(
        Payment.appointment_id == Appointment.id,
        Payment.status.in_(_ACTIVE_PAYMENT_STATUSES),
    )
    holds = _locked(
        db.query(Appointment).filter(
            Appointment.status == AppointmentStatus.PENDING_PAYMENT.value,
            Appointment.created_at <= cutoff,
            ~has_active_payment,
        ),
        db,
    ).all()
    for appointment in holds:
        if payment_service.get_active_payment(db, appointment.id) is not None:
            continue
        payment_service.transition_appointment(
            db, appointment, AppointmentStatus.EXPIRED, now=now, reason=SWEEP_REASON
        )
        result.appointments_expired += 1
        db.commit()


def _complete_past_appointments(db: Session, now: datetime, result: SweepResult) -> None:
    confirmed = _locked(
        db.query(Appointment).filter(
            Appointment.status == AppointmentStatus.CONFIRMED.value,
            Appointment.scheduled_at <= now,
        ),
        db,
    ).all()
    for appointment in confirmed:
        if appointment.ends_at > now:
            continue
        payment_service.transition_appointment(
            db, appointment, AppointmentStatus.COMPLETED, now=now
        )
        result.appointments_completed += 1
    db.commit()


def run_sweep(
    db: Session, *, now: datetime, config: Settings = default_settings
) -> SweepResult:
    """One sweep pass. Idempotent."""
    cutoff = now - timedelta(seconds=config.PAYMENT_HOLD_TTL_SECONDS)
    result = SweepResult()
    try:
        _expire_stale_payments(db, cutoff, now, result)
        _expire_unpaid_holds(db, cutoff, now, result)
        _complete_past_appointments(db, now, result)
    except Exception:
        db.rollback()
        raise

    if result.payments_expired or result.appointments_expired or result.appointments_completed:
        logger.info(
            "Sweep: payments_expired=%s appointments_expired=%s appointments_completed=%s",
            result.payments_expired,
            result.appointments_expired,
            result.appointments_completed,
        )
    return result

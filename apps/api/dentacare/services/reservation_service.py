"""Slot reservation under contention.

A slot is (doctor_id, scheduled_at). Reservation takes a transaction-scoped
advisory lock on PostgreSQL, re-checks for a holding appointment and
inserts; the partial unique index uq_appointment_doctor_slot is the final
arbiter on every dialect.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from dentacare.core.errors import Conflict, ErrorCode, NotFound, PolicyViolation, StoreError
from dentacare.db.enums import (
    AppointmentKind,
    AppointmentStatus,
    Role,
    SLOT_HOLDING_STATUSES,
)
from dentacare.db.models import Appointment, User
from dentacare.db.session import is_postgres

logger = logging.getLogger(__name__)

_HOLDING = [s.value for s in SLOT_HOLDING_STATUSES]


def slot_lock_key(doctor_id: UUID, scheduled_at: datetime) -> int:
    """Signed 64-bit key for pg_advisory_xact_lock."""
    digest = hashlib.sha256(f"{doctor_id}:{scheduled_at.isoformat()}".encode()).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def _lock_slot(db: Session, doctor_id: UUID, scheduled_at: datetime) -> None:
    if is_postgres(db):
        db.execute(
            text("SELECT pg_advisory_xact_lock(:key)"),
            {"key": slot_lock_key(doctor_id, scheduled_at)},
        )


def is_slot_held(db: Session, doctor_id: UUID, scheduled_at: datetime) -> bool:
    return (
        db.query(Appointment.id)
        .filter(
            Appointment.doctor_id == doctor_id,
            Appointment.scheduled_at == scheduled_at,
            Appointment.status.in_(_HOLDING),
        )
        .first()
        is not None
    )


def _resolve_doctor(db: Session, doctor_id: UUID) -> User:
    doctor = db.query(User).filter(User.id == doctor_id).first()
    if not doctor or not doctor.is_active:
        raise NotFound("Doctor not found")
    if doctor.role not in (Role.DOCTOR.value, Role.VIRTUAL_DOCTOR.value):
        raise PolicyViolation("Referenced user is not a doctor")
    return doctor


def _pick_free_virtual_doctor(db: Session, scheduled_at: datetime) -> UUID:
    """First active virtual doctor (oldest account) with the slot free."""
    candidates = (
        db.query(User.id)
        .filter(User.role == Role.VIRTUAL_DOCTOR.value, User.is_active.is_(True))
        .order_by(User.created_at, User.id)
        .all()
    )
    for (doctor_id,) in candidates:
        _lock_slot(db, doctor_id, scheduled_at)
        if not is_slot_held(db, doctor_id, scheduled_at):
            return doctor_id
    raise Conflict("No doctor is available at that time", ErrorCode.SLOT_TAKEN)


def reserve(
    db: Session,
    *,
    patient_id: UUID,
    doctor_id: UUID | None,
    scheduled_at: datetime,
    price_cents: int,
    currency: str,
    duration_minutes: int,
    now: datetime,
    kind: AppointmentKind = AppointmentKind.VIRTUAL,
    redeem_code_id: UUID | None = None,
) -> Appointment:
    """
    Hold the slot with a PENDING_PAYMENT appointment and commit.

    Raises SLOT_TAKEN when another holding appointment owns the slot.
    """
    try:
        if doctor_id is None:
            doctor_id = _pick_free_virtual_doctor(db, scheduled_at)
        else:
            _resolve_doctor(db, doctor_id)
            _lock_slot(db, doctor_id, scheduled_at)
            if is_slot_held(db, doctor_id, scheduled_at):
                raise Conflict("That slot is already taken", ErrorCode.SLOT_TAKEN)

        appointment = Appointment(
            patient_id=patient_id,
            doctor_id=doctor_id,
            kind=kind.value,
            scheduled_at=scheduled_at,
            duration_minutes=duration_minutes,
            status=AppointmentStatus.PENDING_PAYMENT.value,
            price_cents=price_cents,
            currency=currency,
            redeem_code_id=redeem_code_id,
            created_at=now,
            updated_at=now,
        )
        db.add(appointment)
        db.commit()
    except (Conflict, NotFound, PolicyViolation):
        db.rollback()
        raise
    except IntegrityError:
        db.rollback()
        logger.info("Slot race lost for doctor=%s at %s", doctor_id, scheduled_at)
        raise Conflict("That slot is already taken", ErrorCode.SLOT_TAKEN)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Reservation failed: %s", type(exc).__name__)
        raise StoreError("Could not reserve the slot") from exc

    db.refresh(appointment)
    logger.info(
        "Reserved slot doctor=%s at %s for appointment %s",
        doctor_id,
        scheduled_at.isoformat(),
        appointment.id,
    )
    return appointment

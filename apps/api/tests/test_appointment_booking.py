"""Tests for virtual booking and slot reservation."""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from dentacare.core.errors import Conflict, ErrorCode, NotFound, PermissionDenied, PolicyViolation
from dentacare.db.enums import AppointmentStatus, Role
from dentacare.db.models import Appointment, Payment
from dentacare.schemas.appointment import VirtualAppointmentCreate
from dentacare.services import appointment_service, reservation_service
from dentacare.services.payment_service import transition_appointment


def _book(db, actor, clock, scheduled_at, **kwargs):
    data = VirtualAppointmentCreate(scheduled_at=scheduled_at, **kwargs)
    return appointment_service.book_virtual(db, actor, data, clock=clock)


def test_booking_holds_slot_pending_payment(db, clock, slot, patient, doctor, actor):
    result = _book(db, actor(patient), clock, slot, doctor_ref=doctor.id)

    appointment = result.appointment
    assert appointment.status == AppointmentStatus.PENDING_PAYMENT.value
    assert appointment.doctor_id == doctor.id
    assert appointment.patient_id == patient.id
    assert appointment.scheduled_at == slot
    assert appointment.price_cents == 50000
    assert result.final_cents == 50000
    assert reservation_service.is_slot_held(db, doctor.id, slot)


def test_second_booking_of_same_slot_is_slot_taken(
    db, clock, slot, patient, other_patient, doctor, actor
):
    _book(db, actor(patient), clock, slot, doctor_ref=doctor.id)

    with pytest.raises(Conflict) as exc_info:
        _book(db, actor(other_patient), clock, slot, doctor_ref=doctor.id)

    assert exc_info.value.code == ErrorCode.SLOT_TAKEN
    assert db.query(Appointment).count() == 1
    assert db.query(Payment).count() == 0


def test_released_slot_can_be_rebooked(db, clock, slot, patient, other_patient, doctor, actor):
    first = _book(db, actor(patient), clock, slot, doctor_ref=doctor.id).appointment
    transition_appointment(db, first, AppointmentStatus.EXPIRED, now=clock.now())
    db.commit()

    second = _book(db, actor(other_patient), clock, slot, doctor_ref=doctor.id).appointment
    assert second.status == AppointmentStatus.PENDING_PAYMENT.value


def test_partial_unique_index_is_final_arbiter(db, clock, slot, patient, doctor):
    reservation_service.reserve(
        db,
        patient_id=patient.id,
        doctor_id=doctor.id,
        scheduled_at=slot,
        price_cents=50000,
        currency="INR",
        duration_minutes=30,
        now=clock.now(),
    )
    # Insert behind the manager's back: the index must still refuse it
    db.add(
        Appointment(
            patient_id=patient.id,
            doctor_id=doctor.id,
            scheduled_at=slot,
            status=AppointmentStatus.CONFIRMED.value,
            price_cents=50000,
        )
    )
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_missing_doctor_assigns_first_free_virtual_doctor(
    db, clock, slot, patient, other_patient, make_user, actor
):
    first_doctor = make_user(Role.VIRTUAL_DOCTOR, name="Dr. First")
    second_doctor = make_user(Role.VIRTUAL_DOCTOR, name="Dr. Second")

    a = _book(db, actor(patient), clock, slot).appointment
    b = _book(db, actor(other_patient), clock, slot).appointment

    assert a.doctor_id == first_doctor.id
    assert b.doctor_id == second_doctor.id


def test_no_free_virtual_doctor_is_slot_taken(db, clock, slot, patient, other_patient, doctor, actor):
    _book(db, actor(patient), clock, slot)
    with pytest.raises(Conflict) as exc_info:
        _book(db, actor(other_patient), clock, slot)
    assert exc_info.value.code == ErrorCode.SLOT_TAKEN


def test_outside_window_is_rejected_before_reserving(db, clock, patient, doctor, actor):
    # 19:00 IST
    late = clock.now().replace(hour=13, minute=30)
    with pytest.raises(PolicyViolation) as exc_info:
        _book(db, actor(patient), clock, late, doctor_ref=doctor.id)
    assert exc_info.value.code == ErrorCode.OUT_OF_WINDOW
    assert db.query(Appointment).count() == 0


def test_lead_time_boundary(db, clock, patient, other_patient, doctor, actor):
    _book(db, actor(patient), clock, clock.now() + timedelta(minutes=15), doctor_ref=doctor.id)
    with pytest.raises(PolicyViolation):
        _book(
            db,
            actor(other_patient),
            clock,
            clock.now() + timedelta(minutes=14),
            doctor_ref=doctor.id,
        )


def test_unknown_doctor_is_not_found(db, clock, slot, patient, actor):
    with pytest.raises(NotFound):
        _book(db, actor(patient), clock, slot, doctor_ref=uuid.uuid4())


def test_non_doctor_reference_is_rejected(db, clock, slot, patient, other_patient, actor):
    with pytest.raises(PolicyViolation):
        _book(db, actor(patient), clock, slot, doctor_ref=other_patient.id)


def test_doctor_cannot_book(db, clock, slot, doctor, actor):
    with pytest.raises(PermissionDenied):
        _book(db, actor(doctor), clock, slot)


def test_patient_cannot_book_for_someone_else(db, clock, slot, patient, other_patient, doctor, actor):
    with pytest.raises(PermissionDenied):
        _book(db, actor(patient), clock, slot, doctor_ref=doctor.id, patient_ref=other_patient.id)


def test_admin_books_on_behalf_of_patient(db, clock, slot, admin, patient, doctor, actor):
    result = _book(db, actor(admin), clock, slot, doctor_ref=doctor.id, patient_ref=patient.id)
    assert result.appointment.patient_id == patient.id

    with pytest.raises(PolicyViolation):
        _book(db, actor(admin), clock, slot + timedelta(hours=1), doctor_ref=doctor.id)


def test_get_appointment_visibility(db, clock, slot, patient, other_patient, doctor, admin, actor):
    appointment = _book(db, actor(patient), clock, slot, doctor_ref=doctor.id).appointment

    for viewer in (patient, doctor, admin):
        assert appointment_service.get_appointment(db, appointment.id, actor(viewer)).id == appointment.id
    with pytest.raises(PermissionDenied):
        appointment_service.get_appointment(db, appointment.id, actor(other_patient))


def test_slot_lock_key_is_stable_signed_64_bit(slot, doctor):
    key = reservation_service.slot_lock_key(doctor.id, slot)
    assert key == reservation_service.slot_lock_key(doctor.id, slot)
    assert -(2**63) <= key < 2**63
    assert key != reservation_service.slot_lock_key(doctor.id, slot + timedelta(minutes=30))

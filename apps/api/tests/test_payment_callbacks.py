"""Tests for gateway callback verification and idempotent application."""

import base64
import json
from datetime import time, timedelta

import pytest

from dentacare.core.errors import ErrorCode, PolicyViolation
from dentacare.db.enums import AppointmentStatus, PaymentStatus, ReconciliationReason
from dentacare.db.models import (
    AdminServiceWindow,
    Job,
    Payment,
    PaymentEvent,
    PaymentReconciliation,
    Room,
)
from dentacare.services import sweep_service

pytestmark = pytest.mark.asyncio


@pytest.fixture
async def initiated(orchestrator, book, patient, actor):
    appointment = book(patient)
    outcome = await orchestrator.initiate(appointment.id, actor(patient))
    return outcome.payment


def _state(db):
    db.expire_all()
    payment = db.query(Payment).one()
    return payment, payment.appointment


async def test_success_callback_confirms_and_mints_room(db, callback_handler, initiated, sign_callback, clock):
    body, signature = sign_callback(initiated.merchant_txn_id)

    result = callback_handler.handle(body, signature)

    assert result.outcome == "applied"
    payment, appointment = _state(db)
    assert payment.status == PaymentStatus.SUCCESS.value
    assert payment.checksum_verified_at == clock.now()
    assert payment.gateway_raw_response["code"] == "PAYMENT_SUCCESS"
    assert appointment.status == AppointmentStatus.CONFIRMED.value
    assert appointment.room_id == "room-1"
    room = db.query(Room).one()
    assert room.doctor_id == appointment.doctor_id
    assert room.valid_from == appointment.scheduled_at - timedelta(minutes=10)
    assert room.valid_until == appointment.scheduled_at + timedelta(minutes=30)


async def test_bad_signature_is_rejected_without_side_effects(db, callback_handler, initiated, sign_callback):
    body, _ = sign_callback(initiated.merchant_txn_id)
    _, wrong = sign_callback(initiated.merchant_txn_id, salt_key="not-the-salt")

    with pytest.raises(PolicyViolation) as exc_info:
        callback_handler.handle(body, wrong)
    with pytest.raises(PolicyViolation):
        callback_handler.handle(body, None)

    assert exc_info.value.code == ErrorCode.BAD_SIGNATURE
    assert exc_info.value.http_status == 400
    payment, appointment = _state(db)
    assert payment.status == PaymentStatus.INITIATED.value
    assert payment.checksum_verified_at is None
    assert appointment.status == AppointmentStatus.PENDING_PAYMENT.value


async def test_duplicate_success_is_a_no_op(db, callback_handler, initiated, sign_callback):
    body, signature = sign_callback(initiated.merchant_txn_id)
    callback_handler.handle(body, signature)
    events_before = db.query(PaymentEvent).count()
    jobs_before = db.query(Job).count()

    for _ in range(3):
        assert callback_handler.handle(body, signature).outcome == "duplicate"

    payment, appointment = _state(db)
    assert payment.status == PaymentStatus.SUCCESS.value
    assert appointment.status == AppointmentStatus.CONFIRMED.value
    assert appointment.room_id == "room-1"
    assert db.query(Room).count() == 1
    assert db.query(PaymentEvent).count() == events_before
    assert db.query(Job).count() == jobs_before


async def test_pending_callback_moves_to_processing(db, callback_handler, initiated, sign_callback):
    body, signature = sign_callback(initiated.merchant_txn_id, code="PAYMENT_PENDING", state="PENDING")

    assert callback_handler.handle(body, signature).outcome == "applied"
    payment, appointment = _state(db)
    assert payment.status == PaymentStatus.PROCESSING.value
    assert appointment.status == AppointmentStatus.PENDING_PAYMENT.value


async def test_failure_callback_releases_slot(db, callback_handler, initiated, sign_callback):
    body, signature = sign_callback(initiated.merchant_txn_id, code="PAYMENT_ERROR", state="FAILED")

    callback_handler.handle(body, signature)

    payment, appointment = _state(db)
    assert payment.status == PaymentStatus.FAILED.value
    assert payment.failure_reason == "gateway:FAILED"
    assert appointment.status == AppointmentStatus.EXPIRED.value
    assert appointment.room_id is None


async def test_user_drop_cancels_appointment(db, callback_handler, initiated, sign_callback):
    body, signature = sign_callback(initiated.merchant_txn_id, code="USER_CANCELLED", state="CANCELLED")

    callback_handler.handle(body, signature)

    payment, appointment = _state(db)
    assert payment.status == PaymentStatus.CANCELLED.value
    assert appointment.status == AppointmentStatus.CANCELLED.value


async def test_conflicting_callback_is_recorded_not_applied(db, callback_handler, initiated, sign_callback):
    success, success_sig = sign_callback(initiated.merchant_txn_id)
    failure, failure_sig = sign_callback(initiated.merchant_txn_id, code="PAYMENT_ERROR", state="FAILED")
    callback_handler.handle(success, success_sig)

    result = callback_handler.handle(failure, failure_sig)

    assert result.outcome == "conflict"
    payment, appointment = _state(db)
    assert payment.status == PaymentStatus.SUCCESS.value
    assert appointment.status == AppointmentStatus.CONFIRMED.value
    entry = db.query(PaymentReconciliation).one()
    assert entry.reason == ReconciliationReason.CONFLICTING_CALLBACK.value
    assert entry.observed_status == PaymentStatus.FAILED.value
    assert entry.recorded_status == PaymentStatus.SUCCESS.value
    assert entry.resolved is False

    # Replaying the conflict does not add another entry
    callback_handler.handle(failure, failure_sig)
    assert db.query(PaymentReconciliation).count() == 1


async def test_success_after_sweep_expiry_is_reconciled(db, callback_handler, initiated, sign_callback, clock, admin):
    db.add(
        AdminServiceWindow(
            user_id=admin.id,
            start_of_day=time(9, 0),
            end_of_day=time(18, 0),
            timezone="Asia/Kolkata",
            alert_emails=["ops@dentacare.in"],
            active=True,
        )
    )
    db.commit()
    clock.advance(minutes=11)
    sweep = sweep_service.run_sweep(db, now=clock.now())
    assert sweep.payments_expired == 1

    body, signature = sign_callback(initiated.merchant_txn_id)
    result = callback_handler.handle(body, signature)

    assert result.outcome == "reconciled"
    payment, appointment = _state(db)
    assert payment.status == PaymentStatus.SUCCESS.value
    assert appointment.status == AppointmentStatus.CANCELLED.value
    assert appointment.cancellation_reason == ReconciliationReason.OVERBOOKED_REFUND_PENDING.value
    assert appointment.room_id is None
    entry = db.query(PaymentReconciliation).one()
    assert entry.reason == ReconciliationReason.OVERBOOKED_REFUND_PENDING.value
    assert entry.recorded_status == PaymentStatus.EXPIRED.value
    alerts = [job for job in db.query(Job).all() if job.payload["event"] == "reconciliation_alert"]
    assert [job.payload["to"] for job in alerts] == [["ops@dentacare.in"]]

    # The reconciled outcome is itself idempotent
    assert callback_handler.handle(body, signature).outcome == "duplicate"
    assert db.query(PaymentReconciliation).count() == 1


async def test_unknown_merchant_transaction_is_acknowledged(db, callback_handler, sign_callback):
    body, signature = sign_callback("T-9999")
    assert callback_handler.handle(body, signature).outcome == "unknown"


async def test_signed_but_malformed_body_is_acknowledged(callback_handler, gateway):
    encoded = base64.b64encode(json.dumps({"code": "PAYMENT_SUCCESS", "data": {}}).encode()).decode()
    body = json.dumps({"response": encoded}).encode()

    result = callback_handler.handle(body, gateway.expected_signature(encoded))

    assert result.outcome == "malformed"

"""Tests for redeem code management and usage accounting."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from dentacare.core.errors import Conflict, ErrorCode, NotFound, PolicyViolation
from dentacare.db.enums import PaymentStatus
from dentacare.db.models import Payment, RedeemCode, RedemptionRecord
from dentacare.schemas.redeem_code import RedeemCodeCreate, RedeemCodeUpdate
from dentacare.services import redeem_code_service


@pytest.fixture
def create_code(db, admin, clock):
    def _create(code="WELCOME10", **kwargs):
        kwargs.setdefault("name", "Welcome offer")
        kwargs.setdefault("discount_kind", "percent")
        kwargs.setdefault("value", 10)
        return redeem_code_service.create_code(
            db, RedeemCodeCreate(code=code, **kwargs), created_by=admin.id, now=clock.now()
        )

    return _create


# =============================================================================
# Management
# =============================================================================

def test_create_code_normalises_and_rejects_duplicates(db, create_code):
    code = create_code("welcome10")
    assert code.code == "WELCOME10"
    assert code.usage_count == 0
    assert code.active is True

    with pytest.raises(Conflict) as exc_info:
        create_code("Welcome10")
    assert exc_info.value.code == ErrorCode.DUPLICATE
    assert db.query(RedeemCode).count() == 1


def test_create_code_schema_rejects_bad_terms(clock):
    with pytest.raises(ValidationError):
        RedeemCodeCreate(code="BIG", name="Too big", discount_kind="percent", value=150)
    with pytest.raises(ValidationError):
        RedeemCodeCreate(
            code="BACKWARDS",
            name="Backwards",
            discount_kind="flat",
            value=100,
            valid_from=clock.now(),
            valid_until=clock.now() - timedelta(days=1),
        )
    with pytest.raises(ValidationError):
        RedeemCodeCreate(code="no spaces", name="Bad code", discount_kind="flat", value=100)


def test_update_code(db, create_code, clock):
    code = create_code(usage_limit=5)

    updated = redeem_code_service.update_code(
        db,
        code.id,
        RedeemCodeUpdate(active=False, usage_limit=None, value=25),
        now=clock.now(),
    )

    assert updated.active is False
    assert updated.usage_limit is None
    assert updated.value == 25
    assert updated.name == "Welcome offer"


def test_update_code_rejections(db, create_code, clock):
    code = create_code()

    with pytest.raises(PolicyViolation):
        redeem_code_service.update_code(db, code.id, RedeemCodeUpdate(value=120), now=clock.now())
    with pytest.raises(PolicyViolation):
        redeem_code_service.update_code(
            db,
            code.id,
            RedeemCodeUpdate(valid_from=clock.now(), valid_until=clock.now()),
            now=clock.now(),
        )
    with pytest.raises(NotFound):
        redeem_code_service.update_code(db, uuid.uuid4(), RedeemCodeUpdate(active=False), now=clock.now())

    db.refresh(code)
    assert code.value == 10


def test_list_codes(db, create_code, clock):
    create_code("ONE")
    two = create_code("TWO")
    redeem_code_service.update_code(db, two.id, RedeemCodeUpdate(active=False), now=clock.now())

    assert {c.code for c in redeem_code_service.list_codes(db)} == {"ONE", "TWO"}
    assert [c.code for c in redeem_code_service.list_codes(db, active_only=True)] == ["ONE"]


# =============================================================================
# Quoting and usage
# =============================================================================

def test_quote_unknown_code(db, patient, clock):
    with pytest.raises(PolicyViolation) as exc_info:
        redeem_code_service.quote(db, "NOPE", user_id=patient.id, price_cents=50000, now=clock.now())
    assert exc_info.value.code == ErrorCode.REDEEM_NOT_FOUND


def test_quote_is_case_insensitive(db, create_code, patient, clock):
    create_code("WELCOME10")

    code, quote = redeem_code_service.quote(
        db, " welcome10 ", user_id=patient.id, price_cents=50000, now=clock.now()
    )

    assert code.code == "WELCOME10"
    assert quote.discount_cents == 5000
    assert quote.final_cents == 45000


@pytest.mark.asyncio
async def test_in_flight_payments_count_against_usage_limit(
    db, create_code, book, patient, other_patient, orchestrator, callback_handler, sign_callback, actor, slot
):
    create_code("ONEOFF", usage_limit=1)
    appointment = book(patient, redeem_code="ONEOFF")
    started = await orchestrator.initiate(appointment.id, actor(patient))
    assert started.payment.discount_cents == 5000

    with pytest.raises(PolicyViolation) as exc_info:
        book(other_patient, scheduled_at=slot + timedelta(hours=1), redeem_code="ONEOFF")
    assert exc_info.value.code == ErrorCode.REDEEM_EXHAUSTED

    # A failed payment frees its claim on the code
    body, signature = sign_callback(started.payment.merchant_txn_id, code="PAYMENT_ERROR", state="FAILED")
    callback_handler.handle(body, signature)

    other = book(other_patient, scheduled_at=slot + timedelta(hours=1), redeem_code="ONEOFF")
    assert other.redeem_code_id is not None
    assert db.query(RedeemCode).one().usage_count == 0


@pytest.mark.asyncio
async def test_per_user_limit_counts_in_flight_payment(db, create_code, book, patient, orchestrator, actor, slot):
    create_code("ONCEEACH", per_user_limit=1)
    appointment = book(patient, redeem_code="ONCEEACH")
    await orchestrator.initiate(appointment.id, actor(patient))

    with pytest.raises(PolicyViolation) as exc_info:
        book(patient, scheduled_at=slot + timedelta(hours=1), redeem_code="ONCEEACH")
    assert exc_info.value.code == ErrorCode.REDEEM_USER_EXHAUSTED


@pytest.mark.asyncio
async def test_successful_payment_is_redeemed_once(
    db, create_code, book, patient, orchestrator, callback_handler, sign_callback, actor, clock
):
    create_code("WELCOME10")
    appointment = book(patient, redeem_code="WELCOME10")
    started = await orchestrator.initiate(appointment.id, actor(patient))
    body, signature = sign_callback(started.payment.merchant_txn_id)
    callback_handler.handle(body, signature)
    callback_handler.handle(body, signature)

    db.expire_all()
    payment = db.query(Payment).one()
    assert payment.status == PaymentStatus.SUCCESS.value
    record = db.query(RedemptionRecord).one()
    assert record.original_cents == 50000
    assert record.discount_cents == 5000
    assert record.final_cents == 45000
    assert db.query(RedeemCode).one().usage_count == 1

    again = redeem_code_service.record_redemption(db, payment, payment.appointment, now=clock.now())
    assert again.id == record.id
    assert db.query(RedeemCode).one().usage_count == 1


def test_record_redemption_without_code_is_noop(db, book, patient, clock):
    appointment = book(patient)
    payment = Payment(
        appointment_id=appointment.id,
        user_id=patient.id,
        merchant_txn_id="T-9000",
        amount_cents=50000,
        status=PaymentStatus.SUCCESS.value,
    )
    db.add(payment)
    db.flush()

    assert redeem_code_service.record_redemption(db, payment, appointment, now=clock.now()) is None
    db.rollback()


def test_naive_datetimes_are_treated_as_utc():
    naive = datetime(2025, 3, 1, 4, 0)
    aware = datetime(2025, 3, 1, 4, 0, tzinfo=timezone.utc)

    assert redeem_code_service._as_utc(naive) == aware
    assert redeem_code_service._as_utc(naive).tzinfo is timezone.utc
    assert redeem_code_service._as_utc(aware) is aware
    assert redeem_code_service._as_utc(None) is None
    assert redeem_code_service._as_utc(25) == 25


# =============================================================================
# Statistics and removal
# =============================================================================

@pytest.mark.asyncio
async def test_code_stats(
    db, create_code, book, patient, other_patient, orchestrator, callback_handler, sign_callback, actor, clock, slot
):
    code = create_code("WELCOME10", usage_limit=5)
    settled = book(patient, redeem_code="WELCOME10")
    started = await orchestrator.initiate(settled.id, actor(patient))
    body, signature = sign_callback(started.payment.merchant_txn_id)
    callback_handler.handle(body, signature)
    pending = book(other_patient, scheduled_at=slot + timedelta(hours=1), redeem_code="WELCOME10")
    await orchestrator.initiate(pending.id, actor(other_patient))

    stats = redeem_code_service.code_stats(db, code.id, now=clock.now())

    assert stats.code.id == code.id
    assert stats.valid_now is True
    assert stats.total_usage == 1
    assert stats.in_flight == 1
    assert stats.remaining_usage == 3
    assert stats.total_discount_cents == 5000
    assert stats.total_original_cents == 50000
    assert stats.average_discount_cents == 5000
    assert [r.appointment_id for r in stats.history] == [settled.id]
    assert stats.history_total == 1


def test_code_stats_unused_and_unknown(db, create_code, clock):
    code = create_code("NEWBIE", active=False)

    stats = redeem_code_service.code_stats(db, code.id, now=clock.now())

    assert stats.valid_now is False
    assert stats.total_usage == 0
    assert stats.remaining_usage is None
    assert stats.average_discount_cents == 0
    assert stats.history == []
    with pytest.raises(NotFound):
        redeem_code_service.code_stats(db, uuid.uuid4(), now=clock.now())


def test_delete_unused_code(db, create_code):
    code = create_code("TYPO")

    redeem_code_service.delete_code(db, code.id)

    assert db.query(RedeemCode).count() == 0
    with pytest.raises(NotFound):
        redeem_code_service.delete_code(db, code.id)


def test_delete_referenced_code_is_refused(db, create_code, book, patient):
    code = create_code("WELCOME10")
    book(patient, redeem_code="WELCOME10")

    with pytest.raises(Conflict) as exc_info:
        redeem_code_service.delete_code(db, code.id)

    assert exc_info.value.code == ErrorCode.REDEEM_IN_USE
    assert db.query(RedeemCode).count() == 1

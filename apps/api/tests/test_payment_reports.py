"""Tests for admin payment listing and statistics."""

from datetime import date, datetime, timedelta, timezone

import pytest

from dentacare.core.errors import ErrorCode, PolicyViolation
from dentacare.db.enums import PaymentMethod, PaymentStatus
from dentacare.db.models import Payment
from dentacare.services import payment_report_service


@pytest.fixture
def add_payment(db, book, patient, slot):
    booked = []

    def _add(status, *, created_at, completed_at=None, amount=50000, method="pay_page", user=None):
        appointment = book(user or patient, scheduled_at=slot + timedelta(days=len(booked)))
        booked.append(appointment)
        payment = Payment(
            appointment_id=appointment.id,
            user_id=appointment.patient_id,
            merchant_txn_id=f"T-R{len(booked):03d}",
            amount_cents=amount,
            method=method,
            status=status.value,
            created_at=created_at,
            completed_at=completed_at,
        )
        db.add(payment)
        db.commit()
        return payment

    return _add


@pytest.fixture
def payments(add_payment, other_patient, clock):
    now = clock.now()
    return {
        "recent_success": add_payment(
            PaymentStatus.SUCCESS,
            created_at=now - timedelta(days=1),
            completed_at=now - timedelta(days=1) + timedelta(minutes=5),
        ),
        "failed_upi": add_payment(
            PaymentStatus.FAILED, created_at=now - timedelta(days=2), amount=40000, method="upi"
        ),
        "old_success": add_payment(
            PaymentStatus.SUCCESS,
            created_at=now - timedelta(days=40),
            completed_at=now - timedelta(days=40),
            amount=30000,
        ),
        "in_flight": add_payment(
            PaymentStatus.INITIATED, created_at=now - timedelta(hours=1), user=other_patient
        ),
    }


def _ids(rows) -> list:
    return [p.id for p in rows]


# =============================================================================
# Listing
# =============================================================================

def test_list_payments_newest_first(db, payments):
    rows, total = payment_report_service.list_payments(db)

    assert total == 4
    assert _ids(rows) == [
        payments["in_flight"].id,
        payments["recent_success"].id,
        payments["failed_upi"].id,
        payments["old_success"].id,
    ]


def test_list_payments_filters(db, payments, other_patient):
    by_status, _ = payment_report_service.list_payments(
        db, status=payment_report_service.parse_status("SUCCESS")
    )
    by_method, _ = payment_report_service.list_payments(db, method=PaymentMethod.UPI)
    by_user, _ = payment_report_service.list_payments(db, user_id=other_patient.id)

    assert _ids(by_status) == [payments["recent_success"].id, payments["old_success"].id]
    assert _ids(by_method) == [payments["failed_upi"].id]
    assert _ids(by_user) == [payments["in_flight"].id]


def test_list_payments_date_range_includes_whole_last_day(db, payments):
    rows, total = payment_report_service.list_payments(
        db, date_from=date(2025, 2, 27), date_to=date(2025, 2, 28)
    )

    assert total == 2
    assert _ids(rows) == [payments["recent_success"].id, payments["failed_upi"].id]


def test_list_payments_pages(db, payments):
    rows, total = payment_report_service.list_payments(db, limit=2, offset=2)

    assert total == 4
    assert _ids(rows) == [payments["failed_upi"].id, payments["old_success"].id]


def test_filters_reject_unknown_values():
    assert payment_report_service.parse_status(None) is None
    assert payment_report_service.parse_method(" UPI ") == PaymentMethod.UPI
    with pytest.raises(PolicyViolation) as exc_info:
        payment_report_service.parse_status("settled")
    assert exc_info.value.code == ErrorCode.VALIDATION_ERROR
    with pytest.raises(PolicyViolation):
        payment_report_service.parse_method("cheque")
    with pytest.raises(PolicyViolation):
        payment_report_service.day_bounds(date(2025, 3, 2), date(2025, 3, 1))


# =============================================================================
# Statistics
# =============================================================================

def test_stats_default_to_thirty_days_through_today(db, payments, clock):
    stats = payment_report_service.payment_stats(db, now=clock.now())

    assert stats.end == datetime(2025, 3, 2, tzinfo=timezone.utc)
    assert stats.start == datetime(2025, 1, 31, tzinfo=timezone.utc)
    assert stats.revenue_cents == 50000
    assert stats.transactions == 1
    assert [(b.status, b.count, b.total_cents) for b in stats.by_status] == [
        ("failed", 1, 40000),
        ("initiated", 1, 50000),
        ("success", 1, 50000),
    ]
    assert [(b.method, b.count) for b in stats.by_method] == [("pay_page", 2), ("upi", 1)]


def test_stats_for_explicit_period(db, payments, clock):
    stats = payment_report_service.payment_stats(
        db, now=clock.now(), date_from=date(2025, 1, 1), date_to=date(2025, 3, 1)
    )

    assert stats.revenue_cents == 80000
    assert stats.transactions == 2
    assert sum(b.count for b in stats.by_status) == 4


def test_stats_without_payments(db, clock):
    stats = payment_report_service.payment_stats(db, now=clock.now())

    assert stats.revenue_cents == 0
    assert stats.transactions == 0
    assert stats.by_status == []
    assert stats.by_method == []

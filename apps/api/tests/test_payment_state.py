"""Tests for the payment and appointment transition tables."""

import pytest

from dentacare.db.enums import AppointmentStatus as A
from dentacare.db.enums import PaymentStatus as P
from dentacare.services.payment_state import (
    InvalidTransition,
    can_transition_appointment,
    ensure_appointment_transition,
    is_terminal_payment,
    payment_path,
)


def test_same_state_is_empty_path():
    assert payment_path(P.INITIATED, P.INITIATED) == []


def test_skipped_states_are_walked_in_order():
    assert payment_path(P.INITIATED, P.SUCCESS) == [P.PROCESSING, P.SUCCESS]
    assert payment_path(P.CREATED, P.SUCCESS) == [P.INITIATED, P.PROCESSING, P.SUCCESS]


def test_direct_edges():
    assert payment_path(P.INITIATED, P.FAILED) == [P.FAILED]
    assert payment_path(P.SUCCESS, P.REFUNDED) == [P.REFUNDED]


def test_zero_amount_edge_only_when_requested():
    assert payment_path(P.CREATED, P.SUCCESS, zero_amount=True) == [P.SUCCESS]


@pytest.mark.parametrize(
    "current, target",
    [
        (P.SUCCESS, P.FAILED),
        (P.FAILED, P.INITIATED),
        (P.PROCESSING, P.INITIATED),
        (P.REFUNDED, P.SUCCESS),
        (P.EXPIRED, P.SUCCESS),
    ],
)
def test_back_edges_are_rejected(current, target):
    with pytest.raises(InvalidTransition):
        payment_path(current, target)


def test_reconciliation_edge_for_late_money():
    for current in (P.FAILED, P.CANCELLED, P.EXPIRED):
        assert payment_path(current, P.SUCCESS, reconcile=True) == [P.SUCCESS]
    with pytest.raises(InvalidTransition):
        payment_path(P.REFUNDED, P.SUCCESS, reconcile=True)


def test_terminal_payment_states():
    assert is_terminal_payment(P.SUCCESS)
    assert is_terminal_payment(P.EXPIRED)
    assert not is_terminal_payment(P.PROCESSING)


def test_appointment_transitions():
    assert can_transition_appointment(A.PENDING_PAYMENT, A.CONFIRMED)
    assert can_transition_appointment(A.CONFIRMED, A.COMPLETED)
    assert not can_transition_appointment(A.EXPIRED, A.CONFIRMED)
    assert not can_transition_appointment(A.EXPIRED, A.CANCELLED)
    assert can_transition_appointment(A.EXPIRED, A.CANCELLED, reconcile=True)
    with pytest.raises(InvalidTransition):
        ensure_appointment_transition(A.COMPLETED, A.CANCELLED)

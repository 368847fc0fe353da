"""Payment and appointment state machines.

Explicit transition tables. A gateway outcome that skips intermediate
states is applied as the shortest forward path through the payment table.
"""

from __future__ import annotations

from collections import deque

from dentacare.core.errors import Conflict, ErrorCode
from dentacare.db.enums import AppointmentStatus, GatewayStatus, PaymentStatus

P = PaymentStatus
A = AppointmentStatus


PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    P.CREATED: frozenset({P.INITIATED, P.FAILED, P.CANCELLED, P.EXPIRED}),
    P.INITIATED: frozenset({P.PROCESSING, P.FAILED, P.CANCELLED, P.EXPIRED}),
    P.PROCESSING: frozenset({P.SUCCESS, P.FAILED, P.CANCELLED, P.EXPIRED}),
    P.SUCCESS: frozenset({P.REFUNDED}),
    P.FAILED: frozenset(),
    P.CANCELLED: frozenset(),
    P.EXPIRED: frozenset(),
    P.REFUNDED: frozenset(),
}

# Settled without touching the gateway (final amount of zero)
ZERO_AMOUNT_EDGE = (P.CREATED, P.SUCCESS)

# Money captured after the hold was released
PAYMENT_RECONCILIATION_EDGES: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    P.FAILED: frozenset({P.SUCCESS}),
    P.CANCELLED: frozenset({P.SUCCESS}),
    P.EXPIRED: frozenset({P.SUCCESS}),
}

APPOINTMENT_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    A.PENDING_PAYMENT: frozenset({A.CONFIRMED, A.EXPIRED, A.CANCELLED}),
    A.CONFIRMED: frozenset({A.COMPLETED, A.CANCELLED}),
    A.CANCELLED: frozenset(),
    A.EXPIRED: frozenset(),
    A.COMPLETED: frozenset(),
}

APPOINTMENT_RECONCILIATION_EDGES: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    A.EXPIRED: frozenset({A.CANCELLED}),
}

TERMINAL_PAYMENT_STATUSES = frozenset(s for s, nxt in PAYMENT_TRANSITIONS.items() if not nxt) | {
    P.SUCCESS
}

GATEWAY_TO_PAYMENT: dict[GatewayStatus, PaymentStatus] = {
    GatewayStatus.SUCCESS: P.SUCCESS,
    GatewayStatus.PENDING: P.PROCESSING,
    GatewayStatus.FAILED: P.FAILED,
    GatewayStatus.TIMEOUT: P.EXPIRED,
    GatewayStatus.USER_DROP: P.CANCELLED,
}

PAYMENT_TO_APPOINTMENT: dict[PaymentStatus, AppointmentStatus] = {
    P.SUCCESS: A.CONFIRMED,
    P.FAILED: A.EXPIRED,
    P.EXPIRED: A.EXPIRED,
    P.CANCELLED: A.CANCELLED,
}


class InvalidTransition(Conflict):
    default_code = ErrorCode.INVALID_TRANSITION


def is_terminal_payment(status: PaymentStatus) -> bool:
    return status in TERMINAL_PAYMENT_STATUSES


def _payment_edges(
    status: PaymentStatus, *, zero_amount: bool, reconcile: bool
) -> frozenset[PaymentStatus]:
    edges = PAYMENT_TRANSITIONS[status]
    if zero_amount and status == ZERO_AMOUNT_EDGE[0]:
        edges = edges | {ZERO_AMOUNT_EDGE[1]}
    if reconcile:
        edges = edges | PAYMENT_RECONCILIATION_EDGES.get(status, frozenset())
    return edges


def payment_path(
    current: PaymentStatus,
    target: PaymentStatus,
    *,
    zero_amount: bool = False,
    reconcile: bool = False,
) -> list[PaymentStatus]:
    """
    States to step through from ``current`` to ``target`` (target included).

    Empty when already there. Raises InvalidTransition when unreachable.
    """
    if current == target:
        return []

    previous: dict[PaymentStatus, PaymentStatus] = {}
    queue = deque([current])
    seen = {current}
    while queue:
        state = queue.popleft()
        # Deterministic order keeps the chosen path stable
        for nxt in sorted(
            _payment_edges(state, zero_amount=zero_amount, reconcile=reconcile),
            key=lambda s: s.value,
        ):
            if nxt in seen:
                continue
            previous[nxt] = state
            if nxt == target:
                path = [nxt]
                while path[-1] in previous and previous[path[-1]] != current:
                    path.append(previous[path[-1]])
                return list(reversed(path))
            seen.add(nxt)
            queue.append(nxt)

    raise InvalidTransition(
        f"Payment cannot move from {current.value.upper()} to {target.value.upper()}"
    )


def can_transition_appointment(
    current: AppointmentStatus, target: AppointmentStatus, *, reconcile: bool = False
) -> bool:
    if target in APPOINTMENT_TRANSITIONS[current]:
        return True
    return reconcile and target in APPOINTMENT_RECONCILIATION_EDGES.get(current, frozenset())


def ensure_appointment_transition(
    current: AppointmentStatus, target: AppointmentStatus, *, reconcile: bool = False
) -> None:
    if not can_transition_appointment(current, target, reconcile=reconcile):
        raise InvalidTransition(
            f"Appointment cannot move from {current.value.upper()} to {target.value.upper()}"
        )

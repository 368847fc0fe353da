"""Payment orchestration.

Drives the payment and appointment state machines (payment_state.py)
against the gateway. Every state write goes through
record_payment_transition / transition_appointment so that each step is
logged in payment_events and replays are no-ops.

No database lock is held across a gateway call: rows are locked, updated
and committed before the call, then re-locked to apply the answer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dentacare.core.clock import Clock
from dentacare.core.config import Settings, settings as default_settings
from dentacare.core.errors import Conflict, NotFound, UpstreamError
from dentacare.core.ids import IdGen
from dentacare.core.structured_logging import build_log_context
from dentacare.db.enums import (
    AppointmentStatus,
    GatewayStatus,
    NON_TERMINAL_PAYMENT_STATUSES,
    PaymentEventSource,
    PaymentMethod,
    PaymentStatus,
    ReconciliationReason,
)
from dentacare.db.models import (
    Appointment,
    Payment,
    PaymentEvent,
    PaymentReconciliation,
    RedeemCode,
)
from dentacare.schemas.auth import AuthContext
from dentacare.services import (
    notification_service,
    receipt_service,
    redeem_code_service,
    room_service,
    service_window_service,
)
from dentacare.services.notification_service import NotificationEvent
from dentacare.services.payment_gateway import PaymentGateway
from dentacare.services.payment_state import (
    GATEWAY_TO_PAYMENT,
    PAYMENT_RECONCILIATION_EDGES,
    PAYMENT_TO_APPOINTMENT,
    InvalidTransition,
    ensure_appointment_transition,
    is_terminal_payment,
    payment_path,
)
from dentacare.services.policy_engine import Operation, ResourceRef, authorise

logger = logging.getLogger(__name__)

P = PaymentStatus
A = AppointmentStatus

_ACTIVE = [s.value for s in NON_TERMINAL_PAYMENT_STATUSES]
_POLLABLE = {P.INITIATED, P.PROCESSING}

CANCELLED_BY_USER = "cancelled_by_user"
CANCELLED_BY_ADMIN = "cancelled_by_admin"
REFUNDED = "refunded"


# =============================================================================
# Transition primitives
# =============================================================================

def _event_exists(db: Session, payment_id: UUID, status: PaymentStatus) -> bool:
    return (
        db.query(PaymentEvent.id)
        .filter(
            PaymentEvent.payment_id == payment_id,
            PaymentEvent.to_status == status.value,
        )
        .first()
        is not None
    )


def record_payment_transition(
    db: Session,
    payment: Payment,
    target: PaymentStatus,
    *,
    source: PaymentEventSource,
    now: datetime,
    zero_amount: bool = False,
    reconcile: bool = False,
) -> bool:
    """
    Move ``payment`` to ``target``, one logged event per intermediate step.

    Returns False when the payment is already at (or already passed through)
    ``target``. Raises InvalidTransition when ``target`` is unreachable.
    Flushes only; the caller owns the transaction.
    """
    current = payment.status_enum
    if current == target or _event_exists(db, payment.id, target):
        return False

    path = payment_path(current, target, zero_amount=zero_amount, reconcile=reconcile)
    previous = current
    for step in path:
        db.add(
            PaymentEvent(
                payment_id=payment.id,
                from_status=previous.value,
                to_status=step.value,
                source=source.value,
                created_at=now,
            )
        )
        previous = step

    payment.status = target.value
    payment.updated_at = now
    if is_terminal_payment(target):
        payment.completed_at = now
    db.flush()
    logger.info(
        "Payment %s %s -> %s via %s",
        payment.id,
        current.value,
        target.value,
        source.value,
        extra=build_log_context(
            payment_id=str(payment.id), merchant_txn_id=payment.merchant_txn_id
        ),
    )
    return True


def transition_appointment(
    db: Session,
    appointment: Appointment,
    target: AppointmentStatus,
    *,
    now: datetime,
    reason: str | None = None,
    reconcile: bool = False,
) -> bool:
    """Move ``appointment`` to ``target``. False when already there."""
    current = appointment.status_enum
    if current == target:
        return False
    ensure_appointment_transition(current, target, reconcile=reconcile)

    appointment.status = target.value
    appointment.updated_at = now
    if current == A.CONFIRMED:
        # The Room row stays behind as the audit record
        appointment.room_id = None
    if target == A.CONFIRMED:
        appointment.confirmed_at = now
    elif target == A.CANCELLED:
        appointment.cancelled_at = now
        if reason:
            appointment.cancellation_reason = reason
    elif target == A.COMPLETED:
        appointment.completed_at = now
    elif target == A.EXPIRED and reason:
        appointment.cancellation_reason = reason
    db.flush()
    logger.info(
        "Appointment %s %s -> %s",
        appointment.id,
        current.value,
        target.value,
        extra=build_log_context(appointment_id=str(appointment.id)),
    )
    return True


def record_reconciliation(
    db: Session,
    payment: Payment,
    appointment: Appointment,
    *,
    reason: ReconciliationReason,
    observed_status: str,
    recorded_status: str,
    now: datetime,
    payload: dict | None = None,
) -> PaymentReconciliation | None:
    """Append an open reconciliation entry unless an identical one exists."""
    existing = (
        db.query(PaymentReconciliation)
        .filter(
            PaymentReconciliation.payment_id == payment.id,
            PaymentReconciliation.reason == reason.value,
            PaymentReconciliation.observed_status == observed_status,
        )
        .first()
    )
    if existing:
        return None
    entry = PaymentReconciliation(
        payment_id=payment.id,
        appointment_id=appointment.id,
        reason=reason.value,
        observed_status=observed_status,
        recorded_status=recorded_status,
        payload=payload,
        resolved=False,
        created_at=now,
    )
    db.add(entry)
    db.flush()
    logger.warning(
        "Reconciliation %s for payment %s (observed=%s recorded=%s)",
        reason.value,
        payment.id,
        observed_status,
        recorded_status,
        extra=build_log_context(
            payment_id=str(payment.id),
            appointment_id=str(appointment.id),
            merchant_txn_id=payment.merchant_txn_id,
        ),
    )
    return entry


# =============================================================================
# Settlement effects
# =============================================================================

def _confirm(
    db: Session,
    appointment: Appointment,
    *,
    now: datetime,
    id_gen: IdGen,
    config: Settings,
) -> None:
    transition_appointment(db, appointment, A.CONFIRMED, now=now)
    if appointment.is_virtual:
        room_service.mint(db, appointment, now=now, id_gen=id_gen, config=config)
    notification_service.notify_participants(
        db, appointment, NotificationEvent.APPOINTMENT_CONFIRMED
    )


def settle_success(
    db: Session,
    payment: Payment,
    appointment: Appointment,
    *,
    previous_status: PaymentStatus,
    now: datetime,
    id_gen: IdGen,
    config: Settings = default_settings,
) -> None:
    """
    Effects of a payment that has just reached SUCCESS.

    A held slot is confirmed. Money that lands after the appointment left
    PENDING_PAYMENT is kept and flagged for an admin refund; an expired
    appointment becomes CANCELLED so it never pairs with captured money.
    """
    redeem_code_service.record_redemption(db, payment, appointment, now=now)
    receipt_service.schedule_receipt(db, payment, config)

    status = appointment.status_enum
    if status == A.PENDING_PAYMENT:
        _confirm(db, appointment, now=now, id_gen=id_gen, config=config)
        return

    reason = ReconciliationReason.OVERBOOKED_REFUND_PENDING
    if status == A.EXPIRED:
        transition_appointment(
            db, appointment, A.CANCELLED, now=now, reason=reason.value, reconcile=True
        )
        notification_service.notify_participants(
            db, appointment, NotificationEvent.APPOINTMENT_CANCELLED, include_doctor=False
        )
    record_reconciliation(
        db,
        payment,
        appointment,
        reason=reason,
        observed_status=P.SUCCESS.value,
        recorded_status=previous_status.value,
        now=now,
        payload={"appointment_status": status.value},
    )
    notification_service.notify_admins(
        db,
        appointment,
        service_window_service.get_alert_emails(db),
        reason=reason.value,
    )


def settle_failure(
    db: Session,
    appointment: Appointment,
    target: PaymentStatus,
    *,
    now: datetime,
) -> None:
    """Release the slot held by a PENDING_PAYMENT appointment."""
    if appointment.status_enum != A.PENDING_PAYMENT:
        return
    appointment_target = PAYMENT_TO_APPOINTMENT[target]
    transition_appointment(db, appointment, appointment_target, now=now)
    notification_service.notify_participants(
        db,
        appointment,
        NotificationEvent.APPOINTMENT_EXPIRED
        if appointment_target == A.EXPIRED
        else NotificationEvent.APPOINTMENT_CANCELLED,
        include_doctor=False,
    )


class OutcomeResult(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"
    RECONCILED = "reconciled"


def apply_gateway_outcome(
    db: Session,
    payment: Payment,
    appointment: Appointment,
    gateway_status: GatewayStatus,
    *,
    source: PaymentEventSource,
    now: datetime,
    id_gen: IdGen,
    config: Settings = default_settings,
    settlement_meta: dict | None = None,
    gateway_order_id: str | None = None,
) -> OutcomeResult:
    """
    Apply an authoritative gateway outcome to locked rows.

    Shared by callbacks, status polls and cancellation checks. Flushes
    only; the caller commits.
    """
    target = GATEWAY_TO_PAYMENT[gateway_status]
    current = payment.status_enum

    if gateway_order_id and not payment.gateway_order_id:
        payment.gateway_order_id = gateway_order_id
    if settlement_meta:
        payment.gateway_raw_response = {**(payment.gateway_raw_response or {}), **settlement_meta}

    if current == target or _event_exists(db, payment.id, target):
        return OutcomeResult.DUPLICATE

    if is_terminal_payment(current):
        if target == P.SUCCESS and current in PAYMENT_RECONCILIATION_EDGES:
            record_payment_transition(
                db, payment, P.SUCCESS, source=source, now=now, reconcile=True
            )
            settle_success(
                db,
                payment,
                appointment,
                previous_status=current,
                now=now,
                id_gen=id_gen,
                config=config,
            )
            return OutcomeResult.RECONCILED

        record_reconciliation(
            db,
            payment,
            appointment,
            reason=ReconciliationReason.CONFLICTING_CALLBACK,
            observed_status=target.value,
            recorded_status=current.value,
            now=now,
            payload=settlement_meta,
        )
        return OutcomeResult.CONFLICT

    record_payment_transition(db, payment, target, source=source, now=now)
    if target == P.SUCCESS:
        settle_success(
            db,
            payment,
            appointment,
            previous_status=current,
            now=now,
            id_gen=id_gen,
            config=config,
        )
    elif target in PAYMENT_TO_APPOINTMENT:
        payment.failure_reason = payment.failure_reason or f"gateway:{gateway_status.value}"
        settle_failure(db, appointment, target, now=now)
    return OutcomeResult.APPLIED


# =============================================================================
# Queries
# =============================================================================

def get_payment(db: Session, payment_id: UUID) -> Payment | None:
    return db.query(Payment).filter(Payment.id == payment_id).first()


def get_payment_by_txn(db: Session, merchant_txn_id: str) -> Payment | None:
    return db.query(Payment).filter(Payment.merchant_txn_id == merchant_txn_id).first()


def get_active_payment(db: Session, appointment_id: UUID, *, lock: bool = False) -> Payment | None:
    query = db.query(Payment).filter(
        Payment.appointment_id == appointment_id,
        Payment.status.in_(_ACTIVE),
    )
    if lock:
        query = query.with_for_update()
    return query.first()


def get_settled_payment(db: Session, appointment_id: UUID) -> Payment | None:
    """The SUCCESS payment that confirmed the appointment, if any."""
    return (
        db.query(Payment)
        .filter(
            Payment.appointment_id == appointment_id,
            Payment.status == P.SUCCESS.value,
        )
        .first()
    )


def lock_appointment(db: Session, appointment_id: UUID) -> Appointment:
    appointment = (
        db.query(Appointment)
        .filter(Appointment.id == appointment_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if appointment is None:
        raise NotFound("Appointment not found")
    return appointment


def lock_payment_pair(db: Session, payment_id: UUID) -> tuple[Payment, Appointment]:
    """Lock appointment then payment (the global lock order)."""
    payment = get_payment(db, payment_id)
    if payment is None:
        raise NotFound("Payment not found")
    appointment = lock_appointment(db, payment.appointment_id)
    payment = (
        db.query(Payment)
        .filter(Payment.id == payment_id)
        .with_for_update()
        .populate_existing()
        .one()
    )
    return payment, appointment


def list_user_payments(db: Session, user_id: UUID, limit: int = 50) -> list[Payment]:
    return (
        db.query(Payment)
        .filter(Payment.user_id == user_id)
        .order_by(Payment.created_at.desc())
        .limit(limit)
        .all()
    )


def list_reconciliations(
    db: Session, *, resolved: bool | None = None, limit: int = 100
) -> list[PaymentReconciliation]:
    query = db.query(PaymentReconciliation)
    if resolved is not None:
        query = query.filter(PaymentReconciliation.resolved.is_(resolved))
    return query.order_by(PaymentReconciliation.created_at.desc()).limit(limit).all()


# =============================================================================
# Orchestrator
# =============================================================================

@dataclass
class PaymentOutcome:
    payment: Payment | None
    appointment: Appointment
    redirect_target: str | None = None


class PaymentOrchestrator:
    """Request-scoped driver for initiate, status, cancel and refund."""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        clock: Clock,
        id_gen: IdGen,
        config: Settings = default_settings,
    ):
        self.db = db
        self.gateway = gateway
        self.clock = clock
        self.id_gen = id_gen
        self.config = config

    # ------------------------------------------------------------------
    # Initiate
    # ------------------------------------------------------------------

    def _redeem_code_value(self, appointment: Appointment, requested: str | None) -> str | None:
        if requested:
            return requested
        if appointment.redeem_code_id is None:
            return None
        code = self.db.get(RedeemCode, appointment.redeem_code_id)
        return code.code if code else None

    async def initiate(
        self,
        appointment_id: UUID,
        actor: AuthContext,
        method: PaymentMethod = PaymentMethod.PAY_PAGE,
        redeem_code: str | None = None,
    ) -> PaymentOutcome:
        db = self.db
        now = self.clock.now()

        appointment = lock_appointment(db, appointment_id)
        try:
            authorise(
                actor,
                Operation.INITIATE_PAYMENT,
                ResourceRef(owner_id=appointment.patient_id, doctor_id=appointment.doctor_id),
            )
            if appointment.status_enum != A.PENDING_PAYMENT:
                raise InvalidTransition(
                    f"Appointment is {appointment.status.upper()}, not PENDING_PAYMENT"
                )

            existing = get_active_payment(db, appointment.id)
            if existing is not None:
                db.commit()
                return PaymentOutcome(existing, appointment, existing.redirect_url)

            price = appointment.price_cents
            discount = 0
            code_id = None
            code_value = self._redeem_code_value(appointment, redeem_code)
            if code_value:
                code, quote = redeem_code_service.quote(
                    db,
                    code_value,
                    user_id=appointment.patient_id,
                    price_cents=price,
                    now=now,
                    kind=appointment.kind_enum,
                    lock=True,
                )
                discount = quote.discount_cents
                code_id = code.id
            final = price - discount

            payment = Payment(
                appointment_id=appointment.id,
                user_id=appointment.patient_id,
                merchant_txn_id=self.id_gen.merchant_txn_id(),
                amount_cents=final,
                discount_cents=discount,
                currency=appointment.currency,
                method=(PaymentMethod.FREE if final == 0 else method).value,
                status=P.CREATED.value,
                redeem_code_id=code_id,
                created_at=now,
                updated_at=now,
            )
            db.add(payment)
            db.flush()

            if final == 0:
                record_payment_transition(
                    db, payment, P.SUCCESS, source=PaymentEventSource.INITIATE, now=now, zero_amount=True
                )
                settle_success(
                    db,
                    payment,
                    appointment,
                    previous_status=P.CREATED,
                    now=now,
                    id_gen=self.id_gen,
                    config=self.config,
                )
                db.commit()
                logger.info("Zero-amount payment %s settled without gateway", payment.id)
                return PaymentOutcome(payment, appointment, None)

            db.commit()
        except IntegrityError:
            db.rollback()
            raise Conflict("A payment for this appointment is already in progress")
        except Exception:
            db.rollback()
            raise

        payment_id = payment.id
        merchant_txn_id = payment.merchant_txn_id
        try:
            session = await self.gateway.create_session(
                merchant_txn_id=merchant_txn_id,
                amount_cents=final,
                currency=appointment.currency,
                callback_url=self.config.GATEWAY_CALLBACK_URL,
                redirect_url=self.config.GATEWAY_REDIRECT_URL,
                payer={"user_id": actor.user_id, "appointment_id": appointment_id},
            )
        except UpstreamError as exc:
            self._record_initiate_failure(payment_id, exc)
            raise

        payment, appointment = lock_payment_pair(db, payment_id)
        now = self.clock.now()
        if payment.status_enum == P.CREATED:
            record_payment_transition(
                db, payment, P.INITIATED, source=PaymentEventSource.INITIATE, now=now
            )
            payment.initiated_at = now
        if not payment.gateway_order_id:
            payment.gateway_order_id = session.gateway_order_id
        payment.redirect_url = session.redirect_target
        payment.gateway_raw_response = {**(payment.gateway_raw_response or {}), **session.raw}
        db.commit()
        logger.info(
            "Payment %s initiated",
            payment.id,
            extra=build_log_context(
                user_id=str(actor.user_id),
                appointment_id=str(appointment.id),
                payment_id=str(payment.id),
                merchant_txn_id=merchant_txn_id,
            ),
        )
        return PaymentOutcome(payment, appointment, session.redirect_target)

    def _record_initiate_failure(self, payment_id: UUID, exc: UpstreamError) -> None:
        """
        Payment -> FAILED. A rejected request also expires the appointment;
        a transient failure keeps the hold so the client can retry.
        """
        db = self.db
        now = self.clock.now()
        payment, appointment = lock_payment_pair(db, payment_id)
        if payment.status_enum == P.CREATED:
            record_payment_transition(
                db, payment, P.FAILED, source=PaymentEventSource.INITIATE, now=now
            )
            payment.failure_reason = exc.message[:500]
            if not exc.transient:
                settle_failure(db, appointment, P.FAILED, now=now)
        db.commit()
        logger.warning(
            "Payment %s failed at gateway (%s)",
            payment_id,
            exc.code.value,
            extra=build_log_context(
                payment_id=str(payment_id), merchant_txn_id=payment.merchant_txn_id
            ),
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _poll_due(self, payment: Payment, now: datetime) -> bool:
        if payment.status_enum not in _POLLABLE:
            return False
        last = payment.last_polled_at or payment.updated_at
        return now - last >= timedelta(seconds=self.config.STATUS_POLL_INTERVAL_SECONDS)

    async def status(self, payment_id: UUID, actor: AuthContext) -> PaymentOutcome:
        db = self.db
        payment = get_payment(db, payment_id)
        if payment is None:
            raise NotFound("Payment not found")
        authorise(actor, Operation.VIEW_PAYMENT_STATUS, ResourceRef(owner_id=payment.user_id))

        now = self.clock.now()
        if self._poll_due(payment, now):
            merchant_txn_id = payment.merchant_txn_id
            db.commit()
            try:
                result = await self.gateway.fetch_status(merchant_txn_id)
            except UpstreamError as exc:
                logger.warning(
                    "Status poll failed for payment %s: %s",
                    payment_id,
                    exc.code.value,
                    extra=build_log_context(
                        payment_id=str(payment_id), merchant_txn_id=merchant_txn_id
                    ),
                )
                result = None

            payment, appointment = lock_payment_pair(db, payment_id)
            now = self.clock.now()
            payment.last_polled_at = now
            if result is not None:
                apply_gateway_outcome(
                    db,
                    payment,
                    appointment,
                    result.gateway_status,
                    source=PaymentEventSource.POLL,
                    now=now,
                    id_gen=self.id_gen,
                    config=self.config,
                    settlement_meta=result.settlement_meta,
                    gateway_order_id=result.gateway_order_id,
                )
            db.commit()

        payment = get_payment(db, payment_id)
        return PaymentOutcome(payment, payment.appointment, payment.redirect_url)

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    async def cancel(self, appointment_id: UUID, actor: AuthContext) -> PaymentOutcome:
        db = self.db
        now = self.clock.now()
        appointment = lock_appointment(db, appointment_id)
        try:
            authorise(
                actor,
                Operation.CANCEL_APPOINTMENT,
                ResourceRef(owner_id=appointment.patient_id, doctor_id=appointment.doctor_id),
            )
            reason = CANCELLED_BY_ADMIN if actor.is_admin else CANCELLED_BY_USER
            status = appointment.status_enum

            if status == A.CONFIRMED:
                if now >= appointment.scheduled_at:
                    raise InvalidTransition("Appointment has already started")
                transition_appointment(db, appointment, A.CANCELLED, now=now, reason=reason)
                room_service.revoke(db, appointment, now=now)
                notification_service.notify_participants(
                    db, appointment, NotificationEvent.APPOINTMENT_CANCELLED
                )
                paid = get_settled_payment(db, appointment.id)
                if paid is not None:
                    # Captured money stays SUCCESS until an admin records the refund
                    refund_reason = ReconciliationReason.CANCELLED_REFUND_PENDING
                    record_reconciliation(
                        db,
                        paid,
                        appointment,
                        reason=refund_reason,
                        observed_status=P.SUCCESS.value,
                        recorded_status=P.SUCCESS.value,
                        now=now,
                        payload={"cancelled_by": reason},
                    )
                    notification_service.notify_admins(
                        db,
                        appointment,
                        service_window_service.get_alert_emails(db),
                        reason=refund_reason.value,
                    )
                db.commit()
                return PaymentOutcome(paid, appointment)

            if status != A.PENDING_PAYMENT:
                raise InvalidTransition(f"Appointment is {appointment.status.upper()}")

            active = get_active_payment(db, appointment.id, lock=True)
            if active is None:
                transition_appointment(db, appointment, A.CANCELLED, now=now, reason=reason)
                db.commit()
                return PaymentOutcome(None, appointment)

            payment_id = active.id
            merchant_txn_id = active.merchant_txn_id
            reached_gateway = active.status_enum in _POLLABLE
            db.commit()
        except Exception:
            db.rollback()
            raise

        upstream = None
        if reached_gateway:
            upstream = await self.gateway.cancel_session(merchant_txn_id)

        payment, appointment = lock_payment_pair(db, payment_id)
        now = self.clock.now()
        if upstream is not None and upstream.gateway_status == GatewayStatus.SUCCESS:
            # Paid before the cancel landed: keep the money and the booking
            apply_gateway_outcome(
                db,
                payment,
                appointment,
                GatewayStatus.SUCCESS,
                source=PaymentEventSource.POLL,
                now=now,
                id_gen=self.id_gen,
                config=self.config,
                settlement_meta=upstream.settlement_meta,
                gateway_order_id=upstream.gateway_order_id,
            )
        elif payment.is_active:
            record_payment_transition(
                db, payment, P.CANCELLED, source=PaymentEventSource.USER_CANCEL, now=now
            )
            payment.failure_reason = reason
            if appointment.status_enum == A.PENDING_PAYMENT:
                transition_appointment(db, appointment, A.EXPIRED, now=now, reason=reason)
        db.commit()
        return PaymentOutcome(payment, appointment)

    # ------------------------------------------------------------------
    # Refund (recorded only; money moves outside this system)
    # ------------------------------------------------------------------

    def refund(self, payment_id: UUID, actor: AuthContext, reason: str | None = None) -> PaymentOutcome:
        db = self.db
        authorise(actor, Operation.REFUND_PAYMENT)
        payment, appointment = lock_payment_pair(db, payment_id)
        now = self.clock.now()
        try:
            if payment.status_enum != P.REFUNDED:
                if payment.status_enum != P.SUCCESS:
                    raise InvalidTransition(
                        f"Only SUCCESS payments can be refunded (payment is {payment.status.upper()})"
                    )
                record_payment_transition(
                    db, payment, P.REFUNDED, source=PaymentEventSource.ADMIN_REFUND, now=now
                )
                if reason:
                    payment.failure_reason = f"refund: {reason}"[:500]
                if appointment.status_enum == A.CONFIRMED:
                    transition_appointment(
                        db, appointment, A.CANCELLED, now=now, reason=REFUNDED
                    )
                    notification_service.notify_participants(
                        db, appointment, NotificationEvent.APPOINTMENT_CANCELLED
                    )
                room_service.revoke(db, appointment, now=now)
                (
                    db.query(PaymentReconciliation)
                    .filter(
                        PaymentReconciliation.payment_id == payment.id,
                        PaymentReconciliation.resolved.is_(False),
                    )
                    .update({"resolved": True}, synchronize_session=False)
                )
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info(
            "Payment %s refund recorded by %s",
            payment.id,
            actor.user_id,
            extra=build_log_context(user_id=str(actor.user_id), payment_id=str(payment.id)),
        )
        db.refresh(payment)
        return PaymentOutcome(payment, appointment)

    def history(self, actor: AuthContext) -> list[Payment]:
        return list_user_payments(self.db, actor.user_id)


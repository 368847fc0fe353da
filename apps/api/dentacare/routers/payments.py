"""Payments router - initiate, gateway callback, status and history."""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Request

from dentacare.core.deps import (
    get_callback_handler,
    get_current_session,
    get_payment_orchestrator,
)
from dentacare.schemas.auth import AuthContext
from dentacare.schemas.common import Envelope, external_status, ok
from dentacare.schemas.payment import (
    PaymentInitiateRead,
    PaymentInitiateRequest,
    PaymentRead,
    PaymentStatusRead,
)
from dentacare.services.payment_callback_service import CallbackHandler
from dentacare.services.payment_service import PaymentOrchestrator

router = APIRouter()
logger = logging.getLogger(__name__)


def _payment_to_read(payment) -> PaymentRead:
    return PaymentRead(
        id=payment.id,
        appointment_id=payment.appointment_id,
        merchant_txn_id=payment.merchant_txn_id,
        amount_cents=payment.amount_cents,
        discount_cents=payment.discount_cents,
        currency=payment.currency,
        method=payment.method,
        status=external_status(payment.status),
        failure_reason=payment.failure_reason,
        created_at=payment.created_at,
        completed_at=payment.completed_at,
        receipt_url=payment.receipt_url,
    )


@router.post("/initiate", response_model=Envelope[PaymentInitiateRead])
async def initiate_payment(
    data: PaymentInitiateRequest,
    session: AuthContext = Depends(get_current_session),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """
    Start payment for a PENDING_PAYMENT appointment.

    Repeating the call while a payment is in flight returns that payment.
    A zero final amount settles immediately without a gateway session.
    """
    outcome = await orchestrator.initiate(
        data.appointment_id, session, method=data.method, redeem_code=data.redeem_code
    )
    payment = outcome.payment
    return ok(
        PaymentInitiateRead(
            payment_id=payment.id,
            merchant_txn_id=payment.merchant_txn_id,
            redirect_target=outcome.redirect_target,
            payment_status=external_status(payment.status),
            appointment_status=external_status(outcome.appointment.status),
            amount_cents=payment.amount_cents,
            discount_cents=payment.discount_cents,
            currency=payment.currency,
        ),
        message="Payment initiated",
    )


@router.post("/gateway/callback")
# Never rate limited: the gateway must only ever see 200 or 400
async def gateway_callback(
    request: Request,
    x_verify: str | None = Header(default=None, alias="X-VERIFY"),
    handler: CallbackHandler = Depends(get_callback_handler),
):
    """
    Signed server-to-server notification from the gateway.

    Only a bad signature is rejected; everything else is acknowledged so the
    gateway stops redelivering.
    """
    raw_body = await request.body()
    result = handler.handle(raw_body, x_verify)
    logger.debug("Gateway callback handled: %s", result.outcome)
    return ok({}, message="Callback received")


@router.get("/status/{payment_id}", response_model=Envelope[PaymentStatusRead])
async def payment_status(
    payment_id: UUID,
    session: AuthContext = Depends(get_current_session),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Current payment and appointment status (polls the gateway when stale)."""
    outcome = await orchestrator.status(payment_id, session)
    payment = outcome.payment
    return ok(
        PaymentStatusRead(
            payment_id=payment.id,
            appointment_id=payment.appointment_id,
            merchant_txn_id=payment.merchant_txn_id,
            payment_status=external_status(payment.status),
            appointment_status=external_status(outcome.appointment.status),
            room_id=outcome.appointment.room_id,
        )
    )


@router.get("/history", response_model=Envelope[list[PaymentRead]])
def payment_history(
    session: AuthContext = Depends(get_current_session),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    return ok([_payment_to_read(p) for p in orchestrator.history(session)])

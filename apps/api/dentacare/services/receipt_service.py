"""
Receipt service - archive settled payments to the object store.

A receipt job is queued in the transaction that records SUCCESS; the worker
uploads a JSON receipt and stores its URL on the payment.
"""

from __future__ import annotations

import json
import logging
from uuid import UUID

from sqlalchemy.orm import Session

from dentacare.core.config import Settings, settings as default_settings
from dentacare.db.enums import JobType, PaymentStatus
from dentacare.db.models import Payment
from dentacare.services import job_service, storage_client

logger = logging.getLogger(__name__)

RECEIPT_MIME = "application/json"


def _idempotency_key(payment_id: UUID) -> str:
    return f"{JobType.ARCHIVE_RECEIPT.value}:{payment_id}"


def receipt_name(payment: Payment) -> str:
    return f"receipts/{payment.merchant_txn_id}.json"


def schedule_receipt(
    db: Session, payment: Payment, config: Settings = default_settings
) -> bool:
    """Queue a receipt upload for ``payment``. No-op without a receipts bucket."""
    if not config.S3_RECEIPTS_BUCKET:
        return False
    key = _idempotency_key(payment.id)
    if job_service.job_exists(db, key):
        return False
    job_service.schedule_job(
        db,
        JobType.ARCHIVE_RECEIPT,
        {"payment_id": str(payment.id)},
        idempotency_key=key,
    )
    return True


def render_receipt(payment: Payment) -> bytes:
    appointment = payment.appointment
    body = {
        "merchantTxnId": payment.merchant_txn_id,
        "gatewayOrderId": payment.gateway_order_id,
        "appointmentId": str(payment.appointment_id),
        "patientId": str(payment.user_id),
        "doctorId": str(appointment.doctor_id) if appointment.doctor_id else None,
        "scheduledAt": appointment.scheduled_at.isoformat(),
        "amountCents": payment.amount_cents,
        "discountCents": payment.discount_cents,
        "currency": payment.currency,
        "method": payment.method,
        "completedAt": payment.completed_at.isoformat() if payment.completed_at else None,
    }
    return json.dumps(body, sort_keys=True).encode("utf-8")


async def archive_receipt(
    db: Session, payment_id: UUID, *, config: Settings = default_settings
) -> str | None:
    """Upload the receipt for a SUCCESS payment and record its URL."""
    payment = db.get(Payment, payment_id)
    if payment is None:
        logger.warning("Receipt skipped: payment %s not found", payment_id)
        return None
    if payment.status != PaymentStatus.SUCCESS.value:
        logger.info("Receipt skipped: payment %s is %s", payment_id, payment.status)
        return None
    if payment.receipt_url:
        return payment.receipt_url

    url = await storage_client.put(
        config.S3_RECEIPTS_BUCKET,
        receipt_name(payment),
        render_receipt(payment),
        RECEIPT_MIME,
        config=config,
    )
    payment.receipt_url = url
    db.commit()
    logger.info("Receipt archived for payment %s", payment_id)
    return url

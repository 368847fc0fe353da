"""Gateway callback handling.

The gateway may redeliver any event any number of times. Only a bad
signature is reported back (400); every other outcome answers 200 so the
gateway does not retry into a storm, and problems are logged instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dentacare.core.clock import Clock
from dentacare.core.config import Settings, settings as default_settings
from dentacare.core.errors import DentacareError, ErrorCode, PolicyViolation
from dentacare.core.ids import IdGen
from dentacare.core.structured_logging import build_log_context
from dentacare.db.enums import PaymentEventSource
from dentacare.services import payment_service
from dentacare.services.payment_gateway import PaymentGateway
from dentacare.services.payment_service import OutcomeResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallbackResult:
    merchant_txn_id: str | None
    outcome: str


class CallbackHandler:
    """Verifies and applies one gateway callback."""

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

    def handle(self, raw_body: bytes, signature: str | None) -> CallbackResult:
        if not self.gateway.verify_signature(raw_body, signature):
            logger.warning("Gateway callback rejected: bad signature")
            raise PolicyViolation("Invalid callback signature", ErrorCode.BAD_SIGNATURE)

        try:
            event = self.gateway.decode_callback(raw_body)
        except ValueError as exc:
            logger.warning("Signed gateway callback could not be decoded: %s", exc)
            return CallbackResult(None, "malformed")

        log_context = build_log_context(
            merchant_txn_id=event.merchant_txn_id, route="/payment/gateway/callback"
        )
        db = self.db
        try:
            payment = payment_service.get_payment_by_txn(db, event.merchant_txn_id)
            if payment is None:
                logger.warning("Callback for unknown merchant transaction", extra=log_context)
                return CallbackResult(event.merchant_txn_id, "unknown")

            payment, appointment = payment_service.lock_payment_pair(db, payment.id)
            now = self.clock.now()
            if payment.checksum_verified_at is None:
                payment.checksum_verified_at = now
            outcome = payment_service.apply_gateway_outcome(
                db,
                payment,
                appointment,
                event.gateway_status,
                source=PaymentEventSource.CALLBACK,
                now=now,
                id_gen=self.id_gen,
                config=self.config,
                settlement_meta=event.settlement_meta,
                gateway_order_id=event.gateway_order_id,
            )
            db.commit()
        except (SQLAlchemyError, DentacareError) as exc:
            db.rollback()
            logger.error(
                "Callback processing failed: %s",
                type(exc).__name__,
                extra=log_context,
                exc_info=True,
            )
            return CallbackResult(event.merchant_txn_id, "error")

        if outcome == OutcomeResult.CONFLICT:
            logger.warning(
                "%s: gateway says %s, payment is %s",
                ErrorCode.CONFLICTING_CALLBACK.value,
                event.gateway_status.value,
                payment.status.upper(),
                extra=log_context,
            )
        else:
            logger.info(
                "Callback %s (%s)", outcome.value, event.gateway_status.value, extra=log_context
            )
        return CallbackResult(event.merchant_txn_id, outcome.value)

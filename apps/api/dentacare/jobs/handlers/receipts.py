"""Receipt archive job handler."""

from __future__ import annotations

import logging
from uuid import UUID

from dentacare.core.config import settings
from dentacare.services import receipt_service

logger = logging.getLogger(__name__)


async def process_archive_receipt(db, job) -> None:
    """
    Upload a settled payment's receipt.

    Payload:
        - payment_id: the SUCCESS payment
    """
    payload = job.payload or {}
    payment_id = payload.get("payment_id")
    if not payment_id:
        logger.warning("Receipt job %s has no payment id", job.id)
        return

    await receipt_service.archive_receipt(db, UUID(payment_id), config=settings)

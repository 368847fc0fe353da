"""Notification job handlers (email and push)."""

from __future__ import annotations

import logging

from dentacare.core.config import settings
from dentacare.services import email_service, push_service

logger = logging.getLogger(__name__)


async def process_send_email(db, job) -> None:
    """
    Send one notification email.

    Payload:
        - to: list of recipient addresses
        - title: subject line
        - lines: body paragraphs
    """
    payload = job.payload or {}
    recipients = [r for r in payload.get("to") or [] if r]
    if not recipients:
        logger.warning("Email job %s has no recipients", job.id)
        return

    await email_service.send_email(
        recipients,
        payload.get("title", "Dentacare"),
        email_service.render_paragraphs(payload.get("lines") or []),
        idempotency_key=job.idempotency_key,
        config=settings,
    )


async def process_send_push(db, job) -> None:
    """Deliver one push notification to a device token."""
    payload = job.payload or {}
    device_token = payload.get("device_token")
    if not device_token:
        logger.warning("Push job %s has no device token", job.id)
        return

    lines = payload.get("lines") or []
    await push_service.send_push(
        device_token,
        payload.get("title", "Dentacare"),
        " ".join(lines),
        data={
            "event": payload.get("event", ""),
            "appointment_id": payload.get("appointment_id", ""),
        },
        config=settings,
    )

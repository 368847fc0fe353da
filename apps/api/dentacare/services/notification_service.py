"""
Notification Service - enqueue participant and admin notifications.

Notifications are job rows written in the same transaction as the state
change that triggers them, so a rolled-back transition never notifies.
Delivery happens in the worker (jobs/handlers/notifications.py).
"""

from __future__ import annotations

import logging
from enum import Enum
from uuid import UUID

from sqlalchemy.orm import Session

from dentacare.db.enums import JobType
from dentacare.db.models import Appointment, User
from dentacare.services import job_service

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    APPOINTMENT_CONFIRMED = "appointment_confirmed"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    APPOINTMENT_EXPIRED = "appointment_expired"
    RECONCILIATION_ALERT = "reconciliation_alert"


_TITLES = {
    NotificationEvent.APPOINTMENT_CONFIRMED: "Your virtual consultation is confirmed",
    NotificationEvent.APPOINTMENT_CANCELLED: "Your virtual consultation was cancelled",
    NotificationEvent.APPOINTMENT_EXPIRED: "Your booking was not completed",
    NotificationEvent.RECONCILIATION_ALERT: "Payment needs reconciliation",
}


def _idempotency_key(event: NotificationEvent, appointment_id: UUID, recipient: str, channel: str) -> str:
    return f"{event.value}:{appointment_id}:{recipient}:{channel}"


def _lines_for(event: NotificationEvent, appointment: Appointment) -> list[str]:
    when = appointment.scheduled_at.strftime("%Y-%m-%d %H:%M UTC")
    if event == NotificationEvent.APPOINTMENT_CONFIRMED:
        return [
            f"Your virtual consultation on {when} is confirmed.",
            "You can join the video room up to a few minutes before the start time.",
        ]
    if event == NotificationEvent.APPOINTMENT_CANCELLED:
        return [f"The virtual consultation on {when} has been cancelled."]
    if event == NotificationEvent.APPOINTMENT_EXPIRED:
        return [
            f"The booking for {when} was released because payment did not complete.",
        ]
    return [f"Appointment {appointment.id} scheduled for {when} needs review."]


def _enqueue(
    db: Session,
    job_type: JobType,
    key: str,
    payload: dict,
) -> bool:
    if job_service.job_exists(db, key):
        return False
    job_service.schedule_job(db, job_type, payload, idempotency_key=key)
    return True


def notify_participants(
    db: Session,
    appointment: Appointment,
    event: NotificationEvent,
    *,
    include_doctor: bool = True,
) -> int:
    """
    Queue email and push jobs for the patient and the assigned doctor.

    Returns the number of jobs queued; replays queue nothing.
    """
    participant_ids = [appointment.patient_id]
    if include_doctor and appointment.doctor_id is not None:
        participant_ids.append(appointment.doctor_id)
    users = db.query(User).filter(User.id.in_(participant_ids)).all()

    title = _TITLES[event]
    lines = _lines_for(event, appointment)
    queued = 0
    for user in users:
        base = {
            "event": event.value,
            "appointment_id": str(appointment.id),
            "user_id": str(user.id),
            "title": title,
            "lines": lines,
        }
        if user.email:
            key = _idempotency_key(event, appointment.id, str(user.id), "email")
            if _enqueue(db, JobType.SEND_EMAIL, key, {**base, "to": [user.email]}):
                queued += 1
        if user.push_token:
            key = _idempotency_key(event, appointment.id, str(user.id), "push")
            if _enqueue(db, JobType.SEND_PUSH, key, {**base, "device_token": user.push_token}):
                queued += 1

    if queued:
        logger.info(
            "Queued %s notification job(s) for %s on appointment %s",
            queued,
            event.value,
            appointment.id,
        )
    return queued


def notify_admins(
    db: Session,
    appointment: Appointment,
    alert_emails: list[str],
    *,
    reason: str,
) -> bool:
    """Queue one alert email to the configured admin addresses."""
    if not alert_emails:
        logger.warning(
            "No admin alert emails configured; reconciliation %s on appointment %s not mailed",
            reason,
            appointment.id,
        )
        return False
    event = NotificationEvent.RECONCILIATION_ALERT
    key = _idempotency_key(event, appointment.id, reason, "email")
    lines = _lines_for(event, appointment) + [f"Reason: {reason}"]
    return _enqueue(
        db,
        JobType.SEND_EMAIL,
        key,
        {
            "event": event.value,
            "appointment_id": str(appointment.id),
            "title": _TITLES[event],
            "lines": lines,
            "to": list(alert_emails),
        },
    )

"""Job handler registry."""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping

from dentacare.db.enums import JobType
from dentacare.jobs.handlers import notifications, receipts

JobHandler = Callable[[object, object], Awaitable[None]]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobType.SEND_EMAIL.value: notifications.process_send_email,
    JobType.SEND_PUSH.value: notifications.process_send_push,
    JobType.ARCHIVE_RECEIPT.value: receipts.process_archive_receipt,
}


def resolve_job_handler(job_type: str) -> JobHandler:
    handler = JOB_HANDLERS.get(job_type)
    if not handler:
        raise ValueError(f"Unknown job type: {job_type}")
    return handler

"""Tests for notification jobs, transports and the worker loop."""

import json

import httpx
import pytest

from dentacare.core.config import settings
from dentacare.db.enums import JobStatus, JobType, Role
from dentacare.db.models import Job, Payment
from dentacare.services import (
    email_service,
    job_service,
    notification_service,
    push_service,
    receipt_service,
    storage_client,
)
from dentacare.services.notification_service import NotificationEvent


# =============================================================================
# Registry
# =============================================================================

def test_job_registry_resolves_known_handlers():
    from dentacare.jobs.registry import resolve_job_handler

    assert callable(resolve_job_handler(JobType.SEND_EMAIL.value))
    assert callable(resolve_job_handler(JobType.SEND_PUSH.value))
    assert callable(resolve_job_handler(JobType.ARCHIVE_RECEIPT.value))


def test_job_registry_unknown_raises():
    from dentacare.jobs.registry import resolve_job_handler

    with pytest.raises(ValueError):
        resolve_job_handler("nope")


# =============================================================================
# Notification fan-out
# =============================================================================

def test_notify_participants_queues_email_and_push_once(db, book, make_user, doctor):
    patient = make_user(Role.PATIENT, name="Push Patient", push_token="fcm-device-1")
    appointment = book(patient)

    queued = notification_service.notify_participants(
        db, appointment, NotificationEvent.APPOINTMENT_CONFIRMED
    )
    again = notification_service.notify_participants(
        db, appointment, NotificationEvent.APPOINTMENT_CONFIRMED
    )
    db.commit()

    assert queued == 3
    assert again == 0
    jobs = db.query(Job).all()
    assert sorted(job.job_type for job in jobs) == ["send_email", "send_email", "send_push"]
    push = next(job for job in jobs if job.job_type == "send_push")
    assert push.payload["device_token"] == "fcm-device-1"
    assert push.payload["event"] == "appointment_confirmed"
    assert push.max_attempts == 1


def test_notify_admins_requires_alert_emails(db, book, patient):
    appointment = book(patient)

    assert notification_service.notify_admins(db, appointment, [], reason="overbooked_refund_pending") is False
    assert notification_service.notify_admins(
        db, appointment, ["ops@dentacare.in"], reason="overbooked_refund_pending"
    )
    db.commit()

    job = db.query(Job).one()
    assert job.payload["to"] == ["ops@dentacare.in"]
    assert "Reason: overbooked_refund_pending" in job.payload["lines"]


# =============================================================================
# Worker
# =============================================================================

@pytest.mark.asyncio
async def test_run_pending_jobs_completes_dry_run_deliveries(db, book, make_user):
    from dentacare import worker

    patient = make_user(Role.PATIENT, name="Push Patient", push_token="fcm-device-1")
    appointment = book(patient)
    notification_service.notify_participants(db, appointment, NotificationEvent.APPOINTMENT_CONFIRMED)
    db.commit()

    attempted = await worker.run_pending_jobs(db)

    assert attempted == 3
    db.expire_all()
    assert {job.status for job in db.query(Job).all()} == {JobStatus.COMPLETED.value}
    assert await worker.run_pending_jobs(db) == 0


@pytest.mark.asyncio
async def test_failed_delivery_marks_job_failed(db, monkeypatch):
    from dentacare import worker

    async def _fail(*args, **kwargs):
        raise email_service.EmailDeliveryError("Resend API error: 500")

    monkeypatch.setattr(email_service, "send_email", _fail)
    job_service.schedule_job(
        db,
        JobType.SEND_EMAIL,
        {"to": ["patient@dentacare.in"], "title": "Hello", "lines": ["Hi"]},
    )
    db.commit()

    await worker.run_pending_jobs(db)

    job = db.query(Job).one()
    assert job.status == JobStatus.FAILED.value
    assert job.attempts == 1
    assert job.last_error == "EmailDeliveryError: Resend API error: 500"


@pytest.mark.asyncio
async def test_job_without_recipients_completes(db):
    from dentacare import worker

    job_service.schedule_job(db, JobType.SEND_PUSH, {"title": "Nobody"})
    db.commit()

    await worker.run_pending_jobs(db)

    assert db.query(Job).one().status == JobStatus.COMPLETED.value


# =============================================================================
# Receipts
# =============================================================================

class FakeS3:
    def __init__(self):
        self.calls: list[dict] = []

    def put_object(self, **kwargs):  # noqa: ANN003
        self.calls.append(kwargs)
        return {"ETag": '"abc"'}


@pytest.fixture
def receipts_bucket(monkeypatch):
    s3 = FakeS3()
    monkeypatch.setattr(settings, "S3_RECEIPTS_BUCKET", "dentacare-receipts")
    monkeypatch.setattr(settings, "S3_PUBLIC_BASE_URL", "https://files.dentacare.in")
    monkeypatch.setattr(storage_client, "get_s3_client", lambda config: s3)
    return s3


async def _settle(db, orchestrator, book, patient, actor, phonepe, clock) -> Payment:
    appointment = book(patient)
    await orchestrator.initiate(appointment.id, actor(patient))
    phonepe.order_state = "COMPLETED"
    clock.advance(seconds=31)
    outcome = await orchestrator.status(db.query(Payment).one().id, actor(patient))
    return outcome.payment


def _receipt_jobs(db) -> int:
    return db.query(Job).filter(Job.job_type == JobType.ARCHIVE_RECEIPT.value).count()


@pytest.mark.asyncio
async def test_settled_payment_receipt_is_archived(
    db, receipts_bucket, orchestrator, book, patient, actor, phonepe, clock
):
    from dentacare import worker

    payment = await _settle(db, orchestrator, book, patient, actor, phonepe, clock)
    assert _receipt_jobs(db) == 1

    await worker.run_pending_jobs(db)

    db.expire_all()
    payment = db.get(Payment, payment.id)
    assert payment.receipt_url == "https://files.dentacare.in/receipts/T-0001.json"
    [call] = receipts_bucket.calls
    assert call["Bucket"] == "dentacare-receipts"
    assert call["Key"] == "receipts/T-0001.json"
    assert call["ContentType"] == "application/json"
    body = json.loads(call["Body"])
    assert body["merchantTxnId"] == "T-0001"
    assert body["amountCents"] == 50000
    assert body["appointmentId"] == str(payment.appointment_id)


@pytest.mark.asyncio
async def test_receipts_disabled_without_bucket(db, orchestrator, book, patient, actor, phonepe, clock):
    await _settle(db, orchestrator, book, patient, actor, phonepe, clock)

    assert _receipt_jobs(db) == 0


@pytest.mark.asyncio
async def test_archive_skips_unsettled_payment(db, receipts_bucket, orchestrator, book, patient, actor):
    appointment = book(patient)
    outcome = await orchestrator.initiate(appointment.id, actor(patient))

    assert await receipt_service.archive_receipt(db, outcome.payment.id, config=settings) is None
    assert receipts_bucket.calls == []
    assert outcome.payment.receipt_url is None


# =============================================================================
# Transports
# =============================================================================

@pytest.mark.asyncio
async def test_send_email_posts_to_resend():
    config = settings.model_copy(update={"RESEND_API_KEY": "re_test", "EMAIL_FROM": "care@dentacare.in"})
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "msg_123"})

    message_id = await email_service.send_email(
        ["patient@dentacare.in"],
        "Confirmed",
        "<p>See you soon</p>",
        idempotency_key="appointment_confirmed:1:2:email",
        config=config,
        transport=httpx.MockTransport(handler),
    )

    assert message_id == "msg_123"
    request = seen[0]
    assert str(request.url) == email_service.RESEND_SEND_URL
    assert request.headers["Authorization"] == "Bearer re_test"
    assert request.headers["Idempotency-Key"] == "appointment_confirmed:1:2:email"
    body = json.loads(request.content)
    assert body["from"] == "care@dentacare.in"
    assert body["to"] == ["patient@dentacare.in"]


@pytest.mark.asyncio
async def test_send_email_replay_and_failure():
    config = settings.model_copy(update={"RESEND_API_KEY": "re_test"})
    statuses = [409, 500]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(statuses.pop(0), json={})

    transport = httpx.MockTransport(handler)
    assert await email_service.send_email(["a@dentacare.in"], "s", "b", config=config, transport=transport) is None
    with pytest.raises(email_service.EmailDeliveryError):
        await email_service.send_email(["a@dentacare.in"], "s", "b", config=config, transport=transport)


@pytest.mark.asyncio
async def test_send_email_dry_run_without_key():
    assert await email_service.send_email(["a@dentacare.in"], "s", "b", config=settings) is None


def test_render_and_mask_helpers():
    assert email_service.render_paragraphs(["a < b", "ok"]) == "<p>a &lt; b</p><p>ok</p>"
    assert email_service.mask_email("patient@dentacare.in") == "pat...@dentacare.in"
    assert email_service.mask_email(None) == ""


@pytest.mark.asyncio
async def test_send_push_via_fcm():
    config = settings.model_copy(update={"FCM_SERVER_KEY": "fcm-key"})
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": 1, "failure": 0})

    delivered = await push_service.send_push(
        "device-1",
        "Confirmed",
        "See you soon",
        data={"appointment_id": 42},
        config=config,
        transport=httpx.MockTransport(handler),
    )

    assert delivered is True
    assert seen[0].headers["Authorization"] == "key=fcm-key"
    body = json.loads(seen[0].content)
    assert body["to"] == "device-1"
    assert body["data"] == {"appointment_id": "42"}


@pytest.mark.asyncio
async def test_send_push_rejected_token():
    config = settings.model_copy(update={"FCM_SERVER_KEY": "fcm-key"})
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"failure": 1}))

    with pytest.raises(push_service.PushDeliveryError):
        await push_service.send_push("stale", "t", "b", config=config, transport=transport)


@pytest.mark.asyncio
async def test_send_push_dry_run_without_key():
    assert await push_service.send_push("device-1", "t", "b", config=settings) is False

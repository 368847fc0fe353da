"""Tests for the admin service window."""

from datetime import time, timedelta

import pytest
from pydantic import ValidationError

from dentacare.core.errors import ErrorCode, PolicyViolation
from dentacare.db.enums import Role
from dentacare.schemas.service_window import ServiceWindowUpdate
from dentacare.services import service_window_service


def test_default_window_when_no_admin_configured(db):
    window = service_window_service.get_effective_window(db)

    assert window.start_of_day == time(9, 0)
    assert window.end_of_day == time(18, 0)
    assert window.timezone == "Asia/Kolkata"
    assert service_window_service.get_alert_emails(db) == []


def test_upsert_creates_then_updates(db, admin, clock):
    row = service_window_service.upsert_admin_window(
        db,
        admin.id,
        ServiceWindowUpdate(end_of_day=time(20, 0), alert_emails=["ops@dentacare.in"]),
        now=clock.now(),
    )
    assert row.start_of_day == time(9, 0)
    assert row.end_of_day == time(20, 0)
    assert row.alert_emails == ["ops@dentacare.in"]

    again = service_window_service.upsert_admin_window(
        db, admin.id, ServiceWindowUpdate(start_of_day=time(8, 0)), now=clock.now()
    )
    assert again.id == row.id
    assert again.start_of_day == time(8, 0)
    assert again.end_of_day == time(20, 0)
    assert again.alert_emails == ["ops@dentacare.in"]


def test_upsert_rejects_inverted_window(db, admin, clock):
    service_window_service.upsert_admin_window(
        db, admin.id, ServiceWindowUpdate(start_of_day=time(10, 0)), now=clock.now()
    )

    with pytest.raises(PolicyViolation) as exc_info:
        service_window_service.upsert_admin_window(
            db, admin.id, ServiceWindowUpdate(end_of_day=time(10, 0)), now=clock.now()
        )
    assert exc_info.value.code == ErrorCode.VALIDATION_ERROR


def test_update_schema_validates_timezone_and_emails():
    assert ServiceWindowUpdate(timezone="Asia/Tokyo").timezone == "Asia/Tokyo"
    with pytest.raises(ValidationError):
        ServiceWindowUpdate(timezone="Mars/Olympus_Mons")
    with pytest.raises(ValidationError):
        ServiceWindowUpdate(alert_emails=["not-an-email"])


def test_earliest_active_admin_governs(db, admin, make_user, clock):
    service_window_service.upsert_admin_window(
        db, admin.id, ServiceWindowUpdate(start_of_day=time(10, 0)), now=clock.now()
    )
    later_admin = make_user(Role.ADMIN, name="Second Admin")
    service_window_service.upsert_admin_window(
        db,
        later_admin.id,
        ServiceWindowUpdate(start_of_day=time(7, 0)),
        now=clock.now() + timedelta(minutes=1),
    )

    assert service_window_service.get_effective_window(db).start_of_day == time(10, 0)

    admin.is_active = False
    db.commit()
    assert service_window_service.get_effective_window(db).start_of_day == time(7, 0)


def test_booking_follows_the_configured_window(db, admin, book, patient, clock, slot):
    service_window_service.upsert_admin_window(
        db, admin.id, ServiceWindowUpdate(end_of_day=time(15, 0)), now=clock.now()
    )

    # 15:30 in Asia/Kolkata is now past closing
    with pytest.raises(PolicyViolation) as exc_info:
        book(patient, scheduled_at=slot)
    assert exc_info.value.code == ErrorCode.OUT_OF_WINDOW

    service_window_service.upsert_admin_window(
        db, admin.id, ServiceWindowUpdate(timezone="UTC", end_of_day=time(18, 0)), now=clock.now()
    )
    # 10:00 UTC inside 09:00-18:00 UTC
    assert book(patient, scheduled_at=slot).scheduled_at == slot


def test_inactive_window_blocks_booking(db, admin, book, patient, clock, slot):
    service_window_service.upsert_admin_window(
        db, admin.id, ServiceWindowUpdate(active=False), now=clock.now()
    )
    with pytest.raises(PolicyViolation) as exc_info:
        book(patient, scheduled_at=slot)
    assert exc_info.value.code == ErrorCode.OUT_OF_WINDOW

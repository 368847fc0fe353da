"""Tests for video room minting, join tokens and admission."""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from dentacare.core.config import settings
from dentacare.core.errors import AuthenticationError, ErrorCode, NotFound, PermissionDenied
from dentacare.db.enums import AppointmentStatus
from dentacare.db.models import Room
from dentacare.services import room_service
from dentacare.services.payment_service import transition_appointment


@pytest.fixture
def confirmed(db, book, patient, clock, id_gen):
    appointment = book(patient)
    transition_appointment(db, appointment, AppointmentStatus.CONFIRMED, now=clock.now())
    minted = room_service.mint(db, appointment, now=clock.now(), id_gen=id_gen)
    db.commit()
    return appointment, minted


def test_validity_window_uses_grace_and_cap(slot):
    valid_from, valid_until = room_service.validity_window(slot)
    assert valid_from == slot - timedelta(minutes=10)
    assert valid_until == slot + timedelta(minutes=30)


def test_validity_window_capped_by_max_duration(slot):
    config = settings.model_copy(update={"ROOM_GRACE_MINUTES": 240})
    valid_from, valid_until = room_service.validity_window(slot, config)
    assert valid_until == valid_from + timedelta(minutes=90)


def test_mint_assigns_room_and_patient_token(db, confirmed, slot):
    appointment, minted = confirmed

    assert appointment.room_id == minted.room_id == "room-1"
    assert minted.valid_from == slot - timedelta(minutes=10)
    claims = jwt.decode(
        minted.join_token,
        settings.ROOM_SIGNING_SECRET,
        algorithms=["HS256"],
        options={"verify_exp": False, "verify_nbf": False},
    )
    assert claims["sub"] == str(appointment.patient_id)
    assert claims["role"] == "patient"
    assert claims["room_id"] == "room-1"


def test_mint_is_idempotent(db, confirmed, clock, id_gen):
    appointment, minted = confirmed

    again = room_service.mint(db, appointment, now=clock.now(), id_gen=id_gen)

    assert again.room_id == minted.room_id
    assert db.query(Room).count() == 1


def test_issue_token_for_each_participant(db, confirmed, patient, doctor, actor, clock):
    appointment, _ = confirmed

    for user, role in ((patient, "patient"), (doctor, "doctor")):
        issued = room_service.issue_token(db, "room-1", actor(user), now=clock.now())
        assert issued.role == role
        assert issued.valid_until == appointment.scheduled_at + timedelta(minutes=30)


def test_issue_token_rejections(db, confirmed, patient, other_patient, actor, clock, slot):
    appointment, _ = confirmed

    with pytest.raises(NotFound):
        room_service.issue_token(db, "room-404", actor(patient), now=clock.now())

    with pytest.raises(PermissionDenied) as exc_info:
        room_service.issue_token(db, "room-1", actor(other_patient), now=clock.now())
    assert exc_info.value.code == ErrorCode.NOT_PARTICIPANT

    with pytest.raises(AuthenticationError) as exc_info:
        room_service.issue_token(db, "room-1", actor(patient), now=slot + timedelta(minutes=30))
    assert exc_info.value.code == ErrorCode.TOKEN_EXPIRED

    room_service.revoke(db, appointment, now=clock.now())
    db.commit()
    with pytest.raises(PermissionDenied) as exc_info:
        room_service.issue_token(db, "room-1", actor(patient), now=clock.now())
    assert exc_info.value.code == ErrorCode.REVOKED


def test_join_inside_window(db, confirmed, patient, actor, slot):
    _, minted = confirmed

    grant = room_service.join(db, "room-1", minted.join_token, actor(patient), now=slot)

    assert grant.room_id == "room-1"
    assert grant.role == "patient"
    assert grant.signaling_url == settings.SIGNALING_URL
    assert grant.ice_servers == settings.ice_servers_list
    assert grant.valid_until == slot + timedelta(minutes=30)


def test_join_window_boundaries(db, confirmed, patient, actor, slot):
    _, minted = confirmed
    token = minted.join_token

    # nbf is inclusive
    room_service.join(db, "room-1", token, actor(patient), now=slot - timedelta(minutes=10))

    with pytest.raises(AuthenticationError) as exc_info:
        room_service.join(db, "room-1", token, actor(patient), now=slot - timedelta(minutes=11))
    assert exc_info.value.code == ErrorCode.TOKEN_INVALID

    # exp is exclusive
    with pytest.raises(AuthenticationError) as exc_info:
        room_service.join(db, "room-1", token, actor(patient), now=slot + timedelta(minutes=30))
    assert exc_info.value.code == ErrorCode.TOKEN_EXPIRED
    assert exc_info.value.http_status == 401


def test_join_rejects_foreign_or_forged_tokens(db, confirmed, patient, doctor, other_patient, actor, slot):
    appointment, minted = confirmed

    with pytest.raises(PermissionDenied) as exc_info:
        room_service.join(db, "room-1", minted.join_token, actor(doctor), now=slot)
    assert exc_info.value.code == ErrorCode.NOT_PARTICIPANT

    with pytest.raises(PermissionDenied):
        room_service.join(db, "room-1", minted.join_token, actor(other_patient), now=slot)

    forged = jwt.encode(
        {
            "typ": "room_join",
            "room_id": "room-1",
            "sub": str(patient.id),
            "nbf": int(slot.timestamp()) - 600,
            "exp": int(slot.timestamp()) + 1800,
        },
        "not-the-secret",
        algorithm="HS256",
    )
    with pytest.raises(AuthenticationError) as exc_info:
        room_service.join(db, "room-1", forged, actor(patient), now=slot)
    assert exc_info.value.code == ErrorCode.TOKEN_INVALID

    with pytest.raises(AuthenticationError):
        room_service.join(db, "room-1", "garbage", actor(patient), now=slot)


def test_join_token_is_bound_to_its_room(db, confirmed, book, other_patient, patient, doctor, actor, clock, id_gen, slot):
    other = book(other_patient, scheduled_at=slot + timedelta(hours=1))
    transition_appointment(db, other, AppointmentStatus.CONFIRMED, now=clock.now())
    room_service.mint(db, other, now=clock.now(), id_gen=id_gen)
    db.commit()
    _, minted = confirmed

    with pytest.raises(AuthenticationError) as exc_info:
        room_service.join(db, "room-2", minted.join_token, actor(patient), now=slot)
    assert exc_info.value.code == ErrorCode.TOKEN_INVALID


def test_join_revoked_room(db, confirmed, patient, actor, clock, slot):
    appointment, minted = confirmed
    assert room_service.revoke(db, appointment, now=clock.now())
    assert not room_service.revoke(db, appointment, now=clock.now())
    db.commit()

    with pytest.raises(PermissionDenied) as exc_info:
        room_service.join(db, "room-1", minted.join_token, actor(patient), now=slot)
    assert exc_info.value.code == ErrorCode.REVOKED


def test_mint_requires_assigned_doctor(db, book, patient, clock, id_gen):
    appointment = book(patient)
    appointment.doctor_id = None

    with pytest.raises(PermissionDenied):
        room_service.mint(db, appointment, now=clock.now(), id_gen=id_gen)
    db.rollback()


def test_token_times_are_epoch_seconds(confirmed, slot):
    _, minted = confirmed
    claims = jwt.decode(
        minted.join_token,
        settings.ROOM_SIGNING_SECRET,
        algorithms=["HS256"],
        options={"verify_exp": False, "verify_nbf": False},
    )
    assert datetime.fromtimestamp(claims["nbf"], tz=timezone.utc) == slot - timedelta(minutes=10)
    assert datetime.fromtimestamp(claims["exp"], tz=timezone.utc) == slot + timedelta(minutes=30)

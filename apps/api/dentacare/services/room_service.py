"""Video room broker - mint rooms, sign join tokens, admit participants.

Join tokens are HS256 JWTs signed with ROOM_SIGNING_SECRET. Validity is
checked against the injected clock rather than the host time, so PyJWT's
own exp/nbf checks are disabled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

import jwt
from sqlalchemy.orm import Session

from dentacare.core.config import Settings, settings as default_settings
from dentacare.core.errors import (
    AuthenticationError,
    ErrorCode,
    NotFound,
    PermissionDenied,
)
from dentacare.core.ids import IdGen
from dentacare.db.models import Appointment, Room
from dentacare.schemas.auth import AuthContext

logger = logging.getLogger(__name__)

ROOM_TOKEN_ALGORITHM = "HS256"
ROOM_TOKEN_TYPE = "room_join"


@dataclass(frozen=True)
class MintedRoom:
    room_id: str
    join_token: str
    valid_from: datetime
    valid_until: datetime


@dataclass(frozen=True)
class IssuedToken:
    room_id: str
    join_token: str
    role: str
    valid_from: datetime
    valid_until: datetime


@dataclass(frozen=True)
class JoinGrant:
    room_id: str
    role: str
    signaling_url: str
    ice_servers: list[str]
    valid_until: datetime


def validity_window(
    scheduled_at: datetime, config: Settings = default_settings
) -> tuple[datetime, datetime]:
    """
    [valid_from, valid_until] for a room.

    valid_until = min(scheduled + grace, scheduled - pre_join + max_duration)
    """
    pre_join = timedelta(minutes=config.ROOM_PRE_JOIN_WINDOW_MINUTES)
    grace = timedelta(minutes=config.ROOM_GRACE_MINUTES)
    max_duration = timedelta(minutes=config.ROOM_MAX_DURATION_MINUTES)
    valid_from = scheduled_at - pre_join
    valid_until = min(scheduled_at + grace, valid_from + max_duration)
    return valid_from, valid_until


def _encode(room: Room, user_id: UUID, role: str, now: datetime, config: Settings) -> str:
    payload = {
        "typ": ROOM_TOKEN_TYPE,
        "room_id": room.room_id,
        "sub": str(user_id),
        "role": role,
        "iat": int(now.timestamp()),
        "nbf": int(room.valid_from.timestamp()),
        "exp": int(room.valid_until.timestamp()),
    }
    return jwt.encode(payload, config.ROOM_SIGNING_SECRET, algorithm=ROOM_TOKEN_ALGORITHM)


def _decode(token: str, config: Settings) -> dict:
    """Verify the signature only; time claims are checked by the caller."""
    try:
        claims = jwt.decode(
            token,
            config.ROOM_SIGNING_SECRET,
            algorithms=[ROOM_TOKEN_ALGORITHM],
            options={"verify_exp": False, "verify_nbf": False, "verify_iat": False},
        )
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError("Invalid join token", ErrorCode.TOKEN_INVALID) from exc
    if claims.get("typ") != ROOM_TOKEN_TYPE:
        raise AuthenticationError("Invalid join token", ErrorCode.TOKEN_INVALID)
    return claims


def get_room(db: Session, room_id: str) -> Room | None:
    return db.query(Room).filter(Room.room_id == room_id).first()


def get_room_for_appointment(db: Session, appointment_id: UUID) -> Room | None:
    return db.query(Room).filter(Room.appointment_id == appointment_id).first()


def mint(
    db: Session,
    appointment: Appointment,
    *,
    now: datetime,
    id_gen: IdGen,
    config: Settings = default_settings,
) -> MintedRoom:
    """
    Create the room for a confirmed virtual appointment.

    Idempotent: an existing room is reused. Flushes only; the caller owns
    the transaction.
    """
    room = get_room_for_appointment(db, appointment.id)
    if room is None:
        if appointment.doctor_id is None:
            raise PermissionDenied(
                "Appointment has no assigned doctor", ErrorCode.NOT_PARTICIPANT
            )
        valid_from, valid_until = validity_window(appointment.scheduled_at, config)
        room = Room(
            room_id=id_gen.room_id(),
            appointment_id=appointment.id,
            patient_id=appointment.patient_id,
            doctor_id=appointment.doctor_id,
            valid_from=valid_from,
            valid_until=valid_until,
            revoked=False,
            created_at=now,
        )
        db.add(room)
        db.flush()
        logger.info("Room minted for appointment %s", appointment.id)
    appointment.room_id = room.room_id

    return MintedRoom(
        room_id=room.room_id,
        join_token=_encode(room, appointment.patient_id, "patient", now, config),
        valid_from=room.valid_from,
        valid_until=room.valid_until,
    )


def issue_token(
    db: Session,
    room_id: str,
    actor: AuthContext,
    *,
    now: datetime,
    config: Settings = default_settings,
) -> IssuedToken:
    """Join token for a participant of ``room_id``."""
    room = get_room(db, room_id)
    if room is None:
        raise NotFound("Room not found", ErrorCode.ROOM_NOT_FOUND)
    role = room.participant_role(actor.user_id)
    if role is None:
        raise PermissionDenied("You are not a participant of this room", ErrorCode.NOT_PARTICIPANT)
    if room.revoked:
        raise PermissionDenied("Room has been revoked", ErrorCode.REVOKED)
    if now >= room.valid_until:
        raise AuthenticationError("Room access has expired", ErrorCode.TOKEN_EXPIRED)
    return IssuedToken(
        room_id=room.room_id,
        join_token=_encode(room, actor.user_id, role, now, config),
        role=role,
        valid_from=room.valid_from,
        valid_until=room.valid_until,
    )


def join(
    db: Session,
    room_id: str,
    join_token: str,
    actor: AuthContext,
    *,
    now: datetime,
    config: Settings = default_settings,
) -> JoinGrant:
    """Validate a join token and return signaling details."""
    room = get_room(db, room_id)
    if room is None:
        raise NotFound("Room not found", ErrorCode.ROOM_NOT_FOUND)

    claims = _decode(join_token, config)
    if claims.get("room_id") != room.room_id:
        raise AuthenticationError("Token was issued for another room", ErrorCode.TOKEN_INVALID)
    if room.revoked:
        raise PermissionDenied("Room has been revoked", ErrorCode.REVOKED)

    try:
        not_before = datetime.fromtimestamp(int(claims["nbf"]), tz=timezone.utc)
        expires = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
    except (KeyError, TypeError, ValueError) as exc:
        raise AuthenticationError("Invalid join token", ErrorCode.TOKEN_INVALID) from exc
    if now >= expires:
        raise AuthenticationError("Join token has expired", ErrorCode.TOKEN_EXPIRED)
    if now < not_before:
        raise AuthenticationError("Room is not open yet", ErrorCode.TOKEN_INVALID)

    if claims.get("sub") != str(actor.user_id) or room.participant_role(actor.user_id) is None:
        raise PermissionDenied("Token does not belong to you", ErrorCode.NOT_PARTICIPANT)

    return JoinGrant(
        room_id=room.room_id,
        role=claims.get("role") or room.participant_role(actor.user_id),
        signaling_url=config.SIGNALING_URL,
        ice_servers=config.ice_servers_list,
        valid_until=expires,
    )


def revoke(db: Session, appointment: Appointment, *, now: datetime) -> bool:
    """Mark the appointment's room revoked. Flushes only."""
    room = get_room_for_appointment(db, appointment.id)
    if room is None or room.revoked:
        return False
    room.revoked = True
    room.revoked_at = now
    db.flush()
    logger.info("Room revoked for appointment %s", appointment.id)
    return True

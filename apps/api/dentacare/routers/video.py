"""Video router - room join tokens and signaling handoff."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from dentacare.core.clock import Clock
from dentacare.core.config import settings
from dentacare.core.deps import get_clock, get_current_session, get_db
from dentacare.schemas.auth import AuthContext
from dentacare.schemas.common import Envelope, ok
from dentacare.schemas.video import RoomJoinRead, RoomJoinRequest, RoomTokenRead
from dentacare.services import room_service

router = APIRouter()


@router.get("/{room_id}/token", response_model=Envelope[RoomTokenRead])
def get_room_token(
    room_id: str,
    session: AuthContext = Depends(get_current_session),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Signed join token for the patient or doctor of a confirmed appointment."""
    issued = room_service.issue_token(db, room_id, session, now=clock.now(), config=settings)
    return ok(
        RoomTokenRead(
            room_id=issued.room_id,
            join_token=issued.join_token,
            role=issued.role,
            valid_from=issued.valid_from,
            valid_until=issued.valid_until,
        )
    )


@router.post("/{room_id}/join", response_model=Envelope[RoomJoinRead])
def join_room(
    room_id: str,
    data: RoomJoinRequest,
    session: AuthContext = Depends(get_current_session),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    grant = room_service.join(
        db, room_id, data.join_token, session, now=clock.now(), config=settings
    )
    return ok(
        RoomJoinRead(
            room_id=grant.room_id,
            role=grant.role,
            signaling_url=grant.signaling_url,
            ice_servers=grant.ice_servers,
            valid_until=grant.valid_until,
        )
    )

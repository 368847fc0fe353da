"""Video room schemas."""

from datetime import datetime

from pydantic import Field

from dentacare.schemas.common import CamelModel


class RoomTokenRead(CamelModel):
    room_id: str
    join_token: str
    role: str
    valid_from: datetime
    valid_until: datetime


class RoomJoinRequest(CamelModel):
    join_token: str = Field(min_length=1)


class RoomJoinRead(CamelModel):
    room_id: str
    role: str
    signaling_url: str
    ice_servers: list[str]
    valid_until: datetime

"""Admin service window schemas."""

from datetime import time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import EmailStr, field_validator

from dentacare.schemas.common import CamelModel


class ServiceWindowRead(CamelModel):
    start_of_day: time
    end_of_day: time
    timezone: str
    active: bool
    alert_emails: list[str]
    is_default: bool = False


class ServiceWindowUpdate(CamelModel):
    """Fields left out keep their current value."""

    start_of_day: time | None = None
    end_of_day: time | None = None
    timezone: str | None = None
    active: bool | None = None
    alert_emails: list[EmailStr] | None = None

    @field_validator("timezone")
    @classmethod
    def _known_zone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone '{value}'")
        return value

"""Consultation price schemas."""

from datetime import datetime

from pydantic import Field

from dentacare.schemas.common import CamelModel


class PriceRead(CamelModel):
    kind: str
    price_cents: int
    currency: str
    active: bool
    is_default: bool = False
    updated_at: datetime | None = None


class PriceUpdate(CamelModel):
    """Fields left out keep their current value."""

    price_cents: int | None = Field(default=None, ge=0)
    active: bool | None = None

"""Consultation pricing - admin-managed, falling back to configuration."""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dentacare.core.config import Settings, settings as default_settings
from dentacare.core.errors import Conflict, ErrorCode, PolicyViolation
from dentacare.db.enums import AppointmentKind
from dentacare.db.models import ServicePrice
from dentacare.schemas.price import PriceUpdate
from dentacare.services import policy_engine

logger = logging.getLogger(__name__)


def get_price_row(
    db: Session, kind: AppointmentKind = AppointmentKind.VIRTUAL
) -> ServicePrice | None:
    return db.query(ServicePrice).filter(ServicePrice.kind == kind.value).first()


def current_virtual_price(db: Session, config: Settings = default_settings) -> int:
    """Price charged for a new virtual booking. Inactive rows are ignored."""
    row = get_price_row(db)
    admin_price = row.price_cents if row is not None and row.active else None
    return policy_engine.quote_virtual_price(config, admin_price)


def set_virtual_price(
    db: Session, data: PriceUpdate, *, updated_by: UUID, now: datetime
) -> ServicePrice:
    """
    Create or update the virtual consultation price.

    Existing bookings keep the price they were quoted.
    """
    row = get_price_row(db)
    updates = data.model_dump(exclude_unset=True)

    if row is None:
        if updates.get("price_cents") is None:
            raise PolicyViolation("priceCents is required", ErrorCode.VALIDATION_ERROR)
        row = ServicePrice(
            kind=AppointmentKind.VIRTUAL.value,
            price_cents=updates["price_cents"],
            active=True,
            created_at=now,
        )
        db.add(row)

    for field, value in updates.items():
        if value is None:
            continue
        setattr(row, field, value)
    row.updated_by = updated_by
    row.updated_at = now

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("Price was changed concurrently", ErrorCode.DUPLICATE)
    db.refresh(row)
    logger.info(
        "Virtual price set to %s cents (active=%s) by %s",
        row.price_cents,
        row.active,
        updated_by,
    )
    return row

"""Admin service window - read by every booking, written by admins."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from dentacare.core.config import Settings, settings as default_settings
from dentacare.core.errors import ErrorCode, PolicyViolation
from dentacare.db.enums import Role
from dentacare.db.models import AdminServiceWindow, User
from dentacare.schemas.service_window import ServiceWindowUpdate
from dentacare.services.policy_engine import ServiceWindow


def default_window(config: Settings = default_settings) -> ServiceWindow:
    return ServiceWindow(
        start_of_day=config.DEFAULT_SERVICE_START,
        end_of_day=config.DEFAULT_SERVICE_END,
        timezone=config.DEFAULT_SERVICE_TIMEZONE,
        active=True,
    )


def to_policy_window(row: AdminServiceWindow) -> ServiceWindow:
    return ServiceWindow(
        start_of_day=row.start_of_day,
        end_of_day=row.end_of_day,
        timezone=row.timezone,
        active=row.active,
    )


def get_governing_row(db: Session) -> AdminServiceWindow | None:
    """The earliest-created window belonging to an active admin."""
    return (
        db.query(AdminServiceWindow)
        .join(User, User.id == AdminServiceWindow.user_id)
        .filter(User.role == Role.ADMIN.value, User.is_active.is_(True))
        .order_by(AdminServiceWindow.created_at, AdminServiceWindow.id)
        .first()
    )


def get_effective_window(
    db: Session, config: Settings = default_settings
) -> ServiceWindow:
    """Window used to gate bookings; falls back to configured defaults."""
    row = get_governing_row(db)
    if row is None:
        return default_window(config)
    return to_policy_window(row)


def get_alert_emails(db: Session) -> list[str]:
    row = get_governing_row(db)
    if row is None:
        return []
    return list(row.alert_emails or [])


def get_admin_window(db: Session, admin_id: UUID) -> AdminServiceWindow | None:
    return (
        db.query(AdminServiceWindow)
        .filter(AdminServiceWindow.user_id == admin_id)
        .first()
    )


def upsert_admin_window(
    db: Session,
    admin_id: UUID,
    data: ServiceWindowUpdate,
    *,
    now: datetime,
    config: Settings = default_settings,
) -> AdminServiceWindow:
    """Create or update the admin's singleton window."""
    row = get_admin_window(db, admin_id)
    current = to_policy_window(row) if row is not None else default_window(config)

    updates = data.model_dump(exclude_unset=True)
    start = updates.get("start_of_day") or current.start_of_day
    end = updates.get("end_of_day") or current.end_of_day
    if start >= end:
        raise PolicyViolation(
            "startOfDay must be before endOfDay", ErrorCode.VALIDATION_ERROR
        )

    if row is None:
        row = AdminServiceWindow(
            user_id=admin_id,
            start_of_day=current.start_of_day,
            end_of_day=current.end_of_day,
            timezone=current.timezone,
            alert_emails=[],
            active=True,
            created_at=now,
        )
        db.add(row)

    for field, value in updates.items():
        if value is None and field != "alert_emails":
            continue
        if field == "alert_emails":
            value = [str(v) for v in (value or [])]
        setattr(row, field, value)
    row.updated_at = now

    db.commit()
    db.refresh(row)
    return row

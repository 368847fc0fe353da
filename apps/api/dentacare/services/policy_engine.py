"""Booking and pricing predicates.

Pure functions: no database, no network, no clock reads. Callers pass
``now`` and the rows they already loaded.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from decimal import ROUND_HALF_EVEN, Decimal
from enum import Enum
from typing import Protocol
from uuid import UUID
from zoneinfo import ZoneInfo

from dentacare.core.config import Settings
from dentacare.core.errors import ErrorCode, PermissionDenied, PolicyViolation
from dentacare.db.enums import (
    AppointmentKind,
    DiscountKind,
    RedeemApplicability,
    Role,
)
from dentacare.schemas.auth import AuthContext


# =============================================================================
# Service window
# =============================================================================

@dataclass(frozen=True)
class ServiceWindow:
    start_of_day: time
    end_of_day: time
    timezone: str
    active: bool = True


@dataclass(frozen=True)
class BookingLimits:
    min_lead: timedelta
    max_horizon: timedelta

    @classmethod
    def from_settings(cls, config: Settings) -> "BookingLimits":
        return cls(
            min_lead=timedelta(minutes=config.MIN_LEAD_TIME_MINUTES),
            max_horizon=timedelta(days=config.MAX_HORIZON_DAYS),
        )


def normalise_scheduled_at(scheduled_at: datetime) -> datetime:
    """UTC, truncated to the minute. Naive input is taken as UTC."""
    if scheduled_at.tzinfo is None:
        scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
    return scheduled_at.astimezone(timezone.utc).replace(second=0, microsecond=0)


def check_service_window(
    scheduled_at: datetime,
    window: ServiceWindow,
    now: datetime,
    limits: BookingLimits,
) -> None:
    """
    Raise OUT_OF_WINDOW unless ``scheduled_at`` is bookable.

    The local-time projection must fall in [start_of_day, end_of_day) and
    the lead time must lie in [min_lead, max_horizon].
    """
    if not window.active:
        raise PolicyViolation(
            "Virtual appointments are not being accepted", ErrorCode.OUT_OF_WINDOW
        )

    lead = scheduled_at - now
    if lead < limits.min_lead:
        raise PolicyViolation(
            f"Appointments must be booked at least "
            f"{int(limits.min_lead.total_seconds() // 60)} minutes in advance",
            ErrorCode.OUT_OF_WINDOW,
        )
    if lead > limits.max_horizon:
        raise PolicyViolation(
            f"Appointments cannot be booked more than {limits.max_horizon.days} days ahead",
            ErrorCode.OUT_OF_WINDOW,
        )

    local = scheduled_at.astimezone(ZoneInfo(window.timezone)).time().replace(tzinfo=None)
    if not (window.start_of_day <= local < window.end_of_day):
        raise PolicyViolation(
            f"Virtual appointments are available between "
            f"{window.start_of_day.strftime('%H:%M')} and "
            f"{window.end_of_day.strftime('%H:%M')} ({window.timezone})",
            ErrorCode.OUT_OF_WINDOW,
        )


# =============================================================================
# Pricing and redeem codes
# =============================================================================

@dataclass(frozen=True)
class RedeemQuote:
    price_cents: int
    discount_cents: int
    final_cents: int


class RedeemTerms(Protocol):
    """Fields of a redeem code the pricing rules read."""

    discount_kind: str
    value: int
    min_order_cents: int
    max_discount_cents: int | None
    usage_limit: int | None
    usage_count: int
    per_user_limit: int
    valid_from: datetime | None
    valid_until: datetime | None
    active: bool
    applicability: str


def quote_virtual_price(config: Settings, admin_price_cents: int | None = None) -> int:
    """The admin-managed price when one is set, else the configured default."""
    if admin_price_cents is not None:
        return admin_price_cents
    return config.VIRTUAL_APPOINTMENT_PRICE_CENTS


def is_redeemable(code: RedeemTerms, *, now: datetime, usage_count: int) -> bool:
    """Whether ``code`` can currently be used by someone who has not used it yet."""
    if not code.active:
        return False
    if code.valid_from is not None and now < code.valid_from:
        return False
    if code.valid_until is not None and now > code.valid_until:
        return False
    return code.usage_limit is None or usage_count < code.usage_limit


def compute_discount(price_cents: int, code: RedeemTerms) -> int:
    if code.discount_kind == DiscountKind.PERCENT.value:
        raw = (Decimal(price_cents) * Decimal(code.value) / Decimal(100)).quantize(
            Decimal("1"), rounding=ROUND_HALF_EVEN
        )
        discount = int(raw)
        if code.max_discount_cents is not None:
            discount = min(discount, code.max_discount_cents)
    else:
        discount = code.value
    return max(0, min(discount, price_cents))


def apply_redeem(
    price_cents: int,
    code: RedeemTerms,
    user_usage_count: int,
    *,
    now: datetime,
    kind: AppointmentKind = AppointmentKind.VIRTUAL,
    usage_count: int | None = None,
) -> RedeemQuote:
    """
    Price after applying ``code``.

    ``usage_count`` overrides the code's stored counter so callers can
    include uses that are still in flight.
    """
    if not code.active:
        raise PolicyViolation("Redeem code is not active", ErrorCode.REDEEM_INACTIVE)
    if code.valid_from is not None and now < code.valid_from:
        raise PolicyViolation("Redeem code is not yet valid", ErrorCode.REDEEM_INACTIVE)
    if code.valid_until is not None and now > code.valid_until:
        raise PolicyViolation("Redeem code has expired", ErrorCode.REDEEM_EXPIRED)
    if (
        code.applicability == RedeemApplicability.VIRTUAL_ONLY.value
        and kind != AppointmentKind.VIRTUAL
    ):
        raise PolicyViolation(
            "Redeem code is only valid for virtual appointments",
            ErrorCode.REDEEM_NOT_APPLICABLE,
        )

    total_uses = code.usage_count if usage_count is None else usage_count
    if code.usage_limit is not None and total_uses >= code.usage_limit:
        raise PolicyViolation(
            "Redeem code usage limit reached", ErrorCode.REDEEM_EXHAUSTED
        )
    if user_usage_count >= code.per_user_limit:
        raise PolicyViolation(
            "You have already used this redeem code", ErrorCode.REDEEM_USER_EXHAUSTED
        )
    if price_cents < code.min_order_cents:
        raise PolicyViolation(
            f"Minimum order amount is {code.min_order_cents} cents",
            ErrorCode.REDEEM_BELOW_MIN,
        )

    discount = compute_discount(price_cents, code)
    return RedeemQuote(
        price_cents=price_cents,
        discount_cents=discount,
        final_cents=price_cents - discount,
    )


# =============================================================================
# Authorisation
# =============================================================================

class Operation(str, Enum):
    CREATE_VIRTUAL_APPOINTMENT = "create_virtual_appointment"
    VIEW_APPOINTMENT = "view_appointment"
    CANCEL_APPOINTMENT = "cancel_appointment"
    INITIATE_PAYMENT = "initiate_payment"
    VIEW_PAYMENT_STATUS = "view_payment_status"
    JOIN_VIDEO_ROOM = "join_video_room"
    MANAGE_SERVICE_WINDOW = "manage_service_window"
    MANAGE_REDEEM_CODES = "manage_redeem_codes"
    VALIDATE_REDEEM_CODE = "validate_redeem_code"
    REFUND_PAYMENT = "refund_payment"
    VIEW_RECONCILIATIONS = "view_reconciliations"


@dataclass(frozen=True)
class ResourceRef:
    """Who owns a resource and which doctor is assigned to it."""

    owner_id: UUID
    doctor_id: UUID | None = None


_ADMIN_ONLY = {
    Operation.MANAGE_SERVICE_WINDOW,
    Operation.MANAGE_REDEEM_CODES,
    Operation.REFUND_PAYMENT,
    Operation.VIEW_RECONCILIATIONS,
}


def _allowed(actor: AuthContext, op: Operation, resource: ResourceRef | None) -> bool:
    role = actor.role
    is_admin = role == Role.ADMIN
    is_owner = resource is not None and resource.owner_id == actor.user_id
    is_assigned_doctor = (
        resource is not None
        and resource.doctor_id is not None
        and resource.doctor_id == actor.user_id
    )

    if op in _ADMIN_ONLY:
        return is_admin
    if op == Operation.VALIDATE_REDEEM_CODE:
        return True
    if op == Operation.CREATE_VIRTUAL_APPOINTMENT:
        return role in (Role.PATIENT, Role.ADMIN)
    if op == Operation.INITIATE_PAYMENT:
        return is_owner and not is_admin
    if op == Operation.VIEW_PAYMENT_STATUS:
        return is_owner or is_admin
    if op == Operation.CANCEL_APPOINTMENT:
        return is_owner or is_admin
    if op == Operation.VIEW_APPOINTMENT:
        return is_owner or is_assigned_doctor or is_admin
    if op == Operation.JOIN_VIDEO_ROOM:
        return is_owner or is_assigned_doctor
    return False


def authorise(actor: AuthContext, op: Operation, resource: ResourceRef | None = None) -> None:
    """Raise FORBIDDEN unless ``actor`` may perform ``op`` on ``resource``."""
    if not _allowed(actor, op, resource):
        raise PermissionDenied(f"Role '{actor.role.value}' may not {op.value.replace('_', ' ')}")

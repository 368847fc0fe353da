"""Redeem code service - admin management, quoting and redemption."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dentacare.core.errors import Conflict, ErrorCode, NotFound, PolicyViolation
from dentacare.db.enums import AppointmentKind, NON_TERMINAL_PAYMENT_STATUSES
from dentacare.db.models import Appointment, Payment, RedeemCode, RedemptionRecord
from dentacare.schemas.redeem_code import RedeemCodeCreate, RedeemCodeUpdate
from dentacare.services import policy_engine

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = [s.value for s in NON_TERMINAL_PAYMENT_STATUSES]


def normalise_code(code: str) -> str:
    return code.strip().upper()


_NULLABLE_FIELDS = {
    "description",
    "max_discount_cents",
    "usage_limit",
    "valid_from",
    "valid_until",
}


def _as_utc(value: object) -> object:
    """Treat naive datetimes as UTC; other values pass through."""
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# Admin management
# =============================================================================

def create_code(
    db: Session, data: RedeemCodeCreate, *, created_by: UUID, now: datetime
) -> RedeemCode:
    code = RedeemCode(
        code=normalise_code(data.code),
        name=data.name,
        description=data.description,
        discount_kind=data.discount_kind.value,
        value=data.value,
        min_order_cents=data.min_order_cents,
        max_discount_cents=data.max_discount_cents,
        usage_limit=data.usage_limit,
        per_user_limit=data.per_user_limit,
        valid_from=_as_utc(data.valid_from),
        valid_until=_as_utc(data.valid_until),
        active=data.active,
        applicability=data.applicability.value,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    db.add(code)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict(f"Redeem code '{code.code}' already exists", ErrorCode.DUPLICATE)
    db.refresh(code)
    return code


def update_code(
    db: Session, code_id: UUID, data: RedeemCodeUpdate, *, now: datetime
) -> RedeemCode:
    code = _get_code(db, code_id, lock=True)

    updates = data.model_dump(exclude_unset=True)
    for field, value in updates.items():
        if value is None and field not in _NULLABLE_FIELDS:
            continue
        if hasattr(value, "value"):
            value = value.value
        setattr(code, field, _as_utc(value))

    if code.discount_kind == "percent" and code.value > 100:
        db.rollback()
        raise PolicyViolation("Percentage discount cannot exceed 100")
    if code.valid_from and code.valid_until and code.valid_from >= code.valid_until:
        db.rollback()
        raise PolicyViolation("validFrom must be before validUntil")

    code.updated_at = now
    db.commit()
    db.refresh(code)
    return code


def list_codes(db: Session, *, active_only: bool = False) -> list[RedeemCode]:
    query = db.query(RedeemCode)
    if active_only:
        query = query.filter(RedeemCode.active.is_(True))
    return query.order_by(RedeemCode.created_at.desc()).all()


def get_by_code(db: Session, code: str, *, lock: bool = False) -> RedeemCode | None:
    query = db.query(RedeemCode).filter(RedeemCode.code == normalise_code(code))
    if lock:
        query = query.with_for_update()
    return query.first()


# =============================================================================
# Usage accounting
# =============================================================================

def _in_flight_query(db: Session, code_id: UUID, exclude_payment_id: UUID | None):
    query = db.query(func.count(Payment.id)).filter(
        Payment.redeem_code_id == code_id,
        Payment.status.in_(_ACTIVE_STATUSES),
    )
    if exclude_payment_id is not None:
        query = query.filter(Payment.id != exclude_payment_id)
    return query


def total_usage(
    db: Session, code: RedeemCode, *, exclude_payment_id: UUID | None = None
) -> int:
    """Successful redemptions plus payments still holding the code."""
    in_flight = _in_flight_query(db, code.id, exclude_payment_id).scalar() or 0
    return code.usage_count + in_flight


def user_usage(
    db: Session,
    code: RedeemCode,
    user_id: UUID,
    *,
    exclude_payment_id: UUID | None = None,
) -> int:
    redeemed = (
        db.query(func.count(RedemptionRecord.id))
        .filter(
            RedemptionRecord.redeem_code_id == code.id,
            RedemptionRecord.user_id == user_id,
        )
        .scalar()
        or 0
    )
    in_flight = (
        _in_flight_query(db, code.id, exclude_payment_id)
        .filter(Payment.user_id == user_id)
        .scalar()
        or 0
    )
    return redeemed + in_flight


def quote(
    db: Session,
    code_value: str,
    *,
    user_id: UUID,
    price_cents: int,
    now: datetime,
    kind: AppointmentKind = AppointmentKind.VIRTUAL,
    lock: bool = False,
) -> tuple[RedeemCode, policy_engine.RedeemQuote]:
    """
    Validate ``code_value`` for ``user_id`` and price it.

    With ``lock`` the code row stays locked until the caller's transaction
    ends, which linearises concurrent redemptions of the same code.
    """
    code = get_by_code(db, code_value, lock=lock)
    if code is None:
        raise PolicyViolation("Redeem code not found", ErrorCode.REDEEM_NOT_FOUND)
    result = policy_engine.apply_redeem(
        price_cents,
        code,
        user_usage(db, code, user_id),
        now=now,
        kind=kind,
        usage_count=total_usage(db, code),
    )
    return code, result


def record_redemption(
    db: Session, payment: Payment, appointment: Appointment, *, now: datetime
) -> RedemptionRecord | None:
    """
    Count a successful payment against its redeem code.

    Idempotent per payment. Runs inside the caller's transaction; the
    counter is incremented in SQL so concurrent settlements cannot lose an
    update.
    """
    if payment.redeem_code_id is None:
        return None
    existing = (
        db.query(RedemptionRecord)
        .filter(RedemptionRecord.payment_id == payment.id)
        .first()
    )
    if existing:
        return existing

    record = RedemptionRecord(
        redeem_code_id=payment.redeem_code_id,
        user_id=payment.user_id,
        payment_id=payment.id,
        appointment_id=appointment.id,
        original_cents=payment.amount_cents + payment.discount_cents,
        discount_cents=payment.discount_cents,
        final_cents=payment.amount_cents,
        created_at=now,
    )
    db.add(record)
    db.execute(
        update(RedeemCode)
        .where(RedeemCode.id == payment.redeem_code_id)
        .values(usage_count=RedeemCode.usage_count + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.flush()
    code = db.get(RedeemCode, payment.redeem_code_id)
    if code is not None:
        db.refresh(code)
    logger.info(
        "Redeem code %s redeemed by payment %s", payment.redeem_code_id, payment.id
    )
    return record


# =============================================================================
# Statistics and removal
# =============================================================================

@dataclass(frozen=True)
class RedeemCodeStats:
    code: RedeemCode
    valid_now: bool
    total_usage: int
    in_flight: int
    remaining_usage: int | None
    total_discount_cents: int
    total_original_cents: int
    average_discount_cents: int
    history: list[RedemptionRecord]
    history_total: int


def _get_code(db: Session, code_id: UUID, *, lock: bool = False) -> RedeemCode:
    query = db.query(RedeemCode).filter(RedeemCode.id == code_id)
    if lock:
        query = query.with_for_update()
    code = query.first()
    if code is None:
        raise NotFound("Redeem code not found", ErrorCode.REDEEM_NOT_FOUND)
    return code


def code_stats(
    db: Session, code_id: UUID, *, now: datetime, limit: int = 20, offset: int = 0
) -> RedeemCodeStats:
    """Usage totals for a code plus one page of its redemption history."""
    code = _get_code(db, code_id)
    redeemed, discount, original = (
        db.query(
            func.count(RedemptionRecord.id),
            func.coalesce(func.sum(RedemptionRecord.discount_cents), 0),
            func.coalesce(func.sum(RedemptionRecord.original_cents), 0),
        )
        .filter(RedemptionRecord.redeem_code_id == code.id)
        .one()
    )
    in_flight = _in_flight_query(db, code.id, None).scalar() or 0
    usage = total_usage(db, code)
    history = (
        db.query(RedemptionRecord)
        .filter(RedemptionRecord.redeem_code_id == code.id)
        .order_by(RedemptionRecord.created_at.desc(), RedemptionRecord.id)
        .offset(offset)
        .limit(limit)
        .all()
    )
    return RedeemCodeStats(
        code=code,
        valid_now=policy_engine.is_redeemable(code, now=now, usage_count=usage),
        total_usage=int(redeemed),
        in_flight=int(in_flight),
        remaining_usage=max(code.usage_limit - usage, 0) if code.usage_limit is not None else None,
        total_discount_cents=int(discount),
        total_original_cents=int(original),
        average_discount_cents=int(discount) // int(redeemed) if redeemed else 0,
        history=history,
        history_total=int(redeemed),
    )


def delete_code(db: Session, code_id: UUID) -> None:
    """
    Delete a code nobody has used.

    A code referenced by any appointment, payment or redemption must be
    deactivated instead.
    """
    code = _get_code(db, code_id, lock=True)
    referenced = (
        db.query(RedemptionRecord.id).filter(RedemptionRecord.redeem_code_id == code.id).first()
        or db.query(Payment.id).filter(Payment.redeem_code_id == code.id).first()
        or db.query(Appointment.id).filter(Appointment.redeem_code_id == code.id).first()
    )
    if referenced is not None:
        db.rollback()
        raise Conflict(
            "Redeem code has been used; deactivate it instead", ErrorCode.REDEEM_IN_USE
        )
    db.delete(code)
    db.commit()
    logger.info("Redeem code %s deleted", code_id)

"""Admin payment reporting - filtered listing and period statistics."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from dentacare.core.errors import ErrorCode, PolicyViolation
from dentacare.db.enums import PaymentMethod, PaymentStatus
from dentacare.db.models import Payment

DEFAULT_STATS_DAYS = 30


@dataclass(frozen=True)
class StatusBucket:
    status: str
    count: int
    total_cents: int


@dataclass(frozen=True)
class MethodBucket:
    method: str
    count: int


@dataclass(frozen=True)
class PaymentStats:
    start: datetime
    end: datetime
    revenue_cents: int
    transactions: int
    by_status: list[StatusBucket] = field(default_factory=list)
    by_method: list[MethodBucket] = field(default_factory=list)


def parse_status(value: str | None) -> PaymentStatus | None:
    """Accept statuses in either case, as they appear on the wire."""
    if value is None:
        return None
    try:
        return PaymentStatus(value.strip().lower())
    except ValueError:
        raise PolicyViolation(f"Unknown payment status '{value}'", ErrorCode.VALIDATION_ERROR)


def parse_method(value: str | None) -> PaymentMethod | None:
    if value is None:
        return None
    try:
        return PaymentMethod(value.strip().lower())
    except ValueError:
        raise PolicyViolation(f"Unknown payment method '{value}'", ErrorCode.VALIDATION_ERROR)


def day_bounds(date_from: date | None, date_to: date | None) -> tuple[datetime | None, datetime | None]:
    """UTC [start, end) covering whole days; ``date_to`` is inclusive."""
    if date_from and date_to and date_from > date_to:
        raise PolicyViolation("fromDate must not be after toDate", ErrorCode.VALIDATION_ERROR)
    start = datetime.combine(date_from, time.min, tzinfo=timezone.utc) if date_from else None
    end = (
        datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=timezone.utc)
        if date_to
        else None
    )
    return start, end


def list_payments(
    db: Session,
    *,
    status: PaymentStatus | None = None,
    method: PaymentMethod | None = None,
    user_id: UUID | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[Payment], int]:
    """Payments newest first, with the total matching count."""
    start, end = day_bounds(date_from, date_to)
    query = db.query(Payment)
    if status is not None:
        query = query.filter(Payment.status == status.value)
    if method is not None:
        query = query.filter(Payment.method == method.value)
    if user_id is not None:
        query = query.filter(Payment.user_id == user_id)
    if start is not None:
        query = query.filter(Payment.created_at >= start)
    if end is not None:
        query = query.filter(Payment.created_at < end)

    total = query.count()
    payments = (
        query.options(joinedload(Payment.appointment))
        .order_by(Payment.created_at.desc(), Payment.id)
        .offset(offset)
        .limit(limit)
        .all()
    )
    return payments, total


def payment_stats(
    db: Session,
    *,
    now: datetime,
    date_from: date | None = None,
    date_to: date | None = None,
) -> PaymentStats:
    """
    Revenue and distributions for a period, by default the 30 days up to
    and including today (UTC).

    Revenue counts SUCCESS payments completed in the period; the status and
    method distributions count payments created in it.
    """
    if date_to is None:
        date_to = now.astimezone(timezone.utc).date()
    start, end = day_bounds(date_from, date_to)
    start = start or end - timedelta(days=DEFAULT_STATS_DAYS)

    revenue, transactions = (
        db.query(func.coalesce(func.sum(Payment.amount_cents), 0), func.count(Payment.id))
        .filter(
            Payment.status == PaymentStatus.SUCCESS.value,
            Payment.completed_at >= start,
            Payment.completed_at < end,
        )
        .one()
    )

    created_in_period = (Payment.created_at >= start, Payment.created_at < end)
    status_rows = (
        db.query(
            Payment.status,
            func.count(Payment.id),
            func.coalesce(func.sum(Payment.amount_cents), 0),
        )
        .filter(*created_in_period)
        .group_by(Payment.status)
        .order_by(Payment.status)
        .all()
    )
    method_rows = (
        db.query(Payment.method, func.count(Payment.id))
        .filter(*created_in_period)
        .group_by(Payment.method)
        .order_by(Payment.method)
        .all()
    )

    return PaymentStats(
        start=start,
        end=end,
        revenue_cents=int(revenue),
        transactions=int(transactions),
        by_status=[
            StatusBucket(status=s, count=int(c), total_cents=int(t)) for s, c, t in status_rows
        ],
        by_method=[MethodBucket(method=m, count=int(c)) for m, c in method_rows],
    )

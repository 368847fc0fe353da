"""Admin router - service window, pricing, redeem codes, payments,
reconciliations and refunds.

All endpoints require the admin role.
"""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from dentacare.core.clock import Clock
from dentacare.core.config import settings
from dentacare.core.deps import get_clock, get_db, get_payment_orchestrator, require_roles
from dentacare.db.enums import AppointmentKind, Role
from dentacare.schemas.auth import AuthContext
from dentacare.schemas.common import Envelope, external_status, ok
from dentacare.schemas.payment import (
    AdminPaymentList,
    AdminPaymentRead,
    PaymentMethodCount,
    PaymentStatsRead,
    PaymentStatusCount,
    PaymentStatusRead,
    ReconciliationRead,
    RefundRequest,
)
from dentacare.schemas.price import PriceRead, PriceUpdate
from dentacare.schemas.redeem_code import (
    RedeemCodeCreate,
    RedeemCodeRead,
    RedeemCodeStatsRead,
    RedeemCodeUpdate,
    RedemptionRead,
)
from dentacare.schemas.service_window import ServiceWindowRead, ServiceWindowUpdate
from dentacare.services import (
    payment_report_service,
    payment_service,
    price_service,
    redeem_code_service,
    service_window_service,
)
from dentacare.services.payment_service import PaymentOrchestrator
from dentacare.utils.pagination import PaginationParams, get_pagination

router = APIRouter(prefix="/admin", tags=["admin"])

require_admin = require_roles([Role.ADMIN])


# =============================================================================
# Helper Functions
# =============================================================================

def _window_to_read(row) -> ServiceWindowRead:
    return ServiceWindowRead(
        start_of_day=row.start_of_day,
        end_of_day=row.end_of_day,
        timezone=row.timezone,
        active=row.active,
        alert_emails=list(row.alert_emails or []),
    )


def _code_to_read(code) -> RedeemCodeRead:
    return RedeemCodeRead(
        id=code.id,
        code=code.code,
        name=code.name,
        description=code.description,
        discount_kind=code.discount_kind,
        value=code.value,
        min_order_cents=code.min_order_cents,
        max_discount_cents=code.max_discount_cents,
        usage_limit=code.usage_limit,
        usage_count=code.usage_count,
        per_user_limit=code.per_user_limit,
        valid_from=code.valid_from,
        valid_until=code.valid_until,
        active=code.active,
        applicability=code.applicability,
        created_at=code.created_at,
    )


def _payment_to_admin_read(payment) -> AdminPaymentRead:
    appointment = payment.appointment
    return AdminPaymentRead(
        id=payment.id,
        appointment_id=payment.appointment_id,
        user_id=payment.user_id,
        merchant_txn_id=payment.merchant_txn_id,
        amount_cents=payment.amount_cents,
        discount_cents=payment.discount_cents,
        currency=payment.currency,
        method=payment.method,
        status=external_status(payment.status),
        failure_reason=payment.failure_reason,
        created_at=payment.created_at,
        completed_at=payment.completed_at,
        receipt_url=payment.receipt_url,
        appointment_status=external_status(appointment.status),
        scheduled_at=appointment.scheduled_at,
    )


def _price_to_read(db: Session) -> PriceRead:
    row = price_service.get_price_row(db)
    return PriceRead(
        kind=AppointmentKind.VIRTUAL.value,
        price_cents=price_service.current_virtual_price(db, settings),
        currency=settings.PAYMENT_CURRENCY,
        active=row.active if row is not None else False,
        is_default=row is None or not row.active,
        updated_at=row.updated_at if row is not None else None,
    )


# =============================================================================
# Service Window
# =============================================================================

@router.get("/service-window", response_model=Envelope[ServiceWindowRead])
def get_service_window(
    session: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """The caller's window, or the configured defaults when none is saved."""
    row = service_window_service.get_admin_window(db, session.user_id)
    if row is not None:
        return ok(_window_to_read(row))
    window = service_window_service.default_window(settings)
    return ok(
        ServiceWindowRead(
            start_of_day=window.start_of_day,
            end_of_day=window.end_of_day,
            timezone=window.timezone,
            active=window.active,
            alert_emails=[],
            is_default=True,
        )
    )


@router.put("/service-window", response_model=Envelope[ServiceWindowRead])
def update_service_window(
    data: ServiceWindowUpdate,
    session: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    row = service_window_service.upsert_admin_window(
        db, session.user_id, data, now=clock.now(), config=settings
    )
    return ok(_window_to_read(row), message="Service window updated")


# =============================================================================
# Pricing
# =============================================================================

@router.get("/price", response_model=Envelope[PriceRead])
def get_virtual_price(
    session: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """The virtual consultation price new bookings are charged."""
    return ok(_price_to_read(db))


@router.put("/price", response_model=Envelope[PriceRead])
def update_virtual_price(
    data: PriceUpdate,
    session: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """
    Set the virtual consultation price.

    Deactivating the price falls back to the configured default.
    """
    price_service.set_virtual_price(db, data, updated_by=session.user_id, now=clock.now())
    return ok(_price_to_read(db), message="Price updated")


# =============================================================================
# Redeem Codes
# =============================================================================

@router.post("/redeem-codes", status_code=201, response_model=Envelope[RedeemCodeRead])
def create_redeem_code(
    data: RedeemCodeCreate,
    session: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    code = redeem_code_service.create_code(
        db, data, created_by=session.user_id, now=clock.now()
    )
    return ok(_code_to_read(code), message="Redeem code created", code=201)


@router.get("/redeem-codes", response_model=Envelope[list[RedeemCodeRead]])
def list_redeem_codes(
    active_only: bool = Query(False, alias="activeOnly"),
    session: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    codes = redeem_code_service.list_codes(db, active_only=active_only)
    return ok([_code_to_read(c) for c in codes])


@router.patch("/redeem-codes/{code_id}", response_model=Envelope[RedeemCodeRead])
def update_redeem_code(
    code_id: UUID,
    data: RedeemCodeUpdate,
    session: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    code = redeem_code_service.update_code(db, code_id, data, now=clock.now())
    return ok(_code_to_read(code), message="Redeem code updated")


@router.delete("/redeem-codes/{code_id}", response_model=Envelope[None])
def delete_redeem_code(
    code_id: UUID,
    session: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Delete an unused code. Used codes are rejected with REDEEM_IN_USE."""
    redeem_code_service.delete_code(db, code_id)
    return ok(None, message="Redeem code deleted")


@router.get("/redeem-codes/{code_id}/stats", response_model=Envelope[RedeemCodeStatsRead])
def get_redeem_code_stats(
    code_id: UUID,
    pagination: PaginationParams = Depends(get_pagination),
    session: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Usage totals and one page of redemption history."""
    stats = redeem_code_service.code_stats(
        db,
        code_id,
        now=clock.now(),
        limit=pagination.per_page,
        offset=pagination.offset,
    )
    return ok(
        RedeemCodeStatsRead(
            redeem_code=_code_to_read(stats.code),
            valid_now=stats.valid_now,
            total_usage=stats.total_usage,
            in_flight=stats.in_flight,
            remaining_usage=stats.remaining_usage,
            total_discount_cents=stats.total_discount_cents,
            total_original_cents=stats.total_original_cents,
            average_discount_cents=stats.average_discount_cents,
            history=[
                RedemptionRead(
                    id=r.id,
                    user_id=r.user_id,
                    payment_id=r.payment_id,
                    appointment_id=r.appointment_id,
                    original_cents=r.original_cents,
                    discount_cents=r.discount_cents,
                    final_cents=r.final_cents,
                    created_at=r.created_at,
                )
                for r in stats.history
            ],
            total=stats.history_total,
            page=pagination.page,
            per_page=pagination.per_page,
            pages=pagination.pages(stats.history_total),
        )
    )


# =============================================================================
# Payments
# =============================================================================

@router.get("/payments", response_model=Envelope[AdminPaymentList])
def list_payments(
    pagination: PaginationParams = Depends(get_pagination),
    status: str | None = Query(None),
    method: str | None = Query(None),
    user_id: UUID | None = Query(None, alias="userId"),
    from_date: date | None = Query(None, alias="fromDate"),
    to_date: date | None = Query(None, alias="toDate"),
    session: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """All payments, newest first. ``toDate`` includes the whole day (UTC)."""
    payments, total = payment_report_service.list_payments(
        db,
        status=payment_report_service.parse_status(status),
        method=payment_report_service.parse_method(method),
        user_id=user_id,
        date_from=from_date,
        date_to=to_date,
        limit=pagination.per_page,
        offset=pagination.offset,
    )
    return ok(
        AdminPaymentList(
            items=[_payment_to_admin_read(p) for p in payments],
            total=total,
            page=pagination.page,
            per_page=pagination.per_page,
            pages=pagination.pages(total),
        )
    )


@router.get("/payments/stats", response_model=Envelope[PaymentStatsRead])
def get_payment_stats(
    from_date: date | None = Query(None, alias="fromDate"),
    to_date: date | None = Query(None, alias="toDate"),
    session: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Revenue and status/method counts; defaults to the last 30 days."""
    stats = payment_report_service.payment_stats(
        db, now=clock.now(), date_from=from_date, date_to=to_date
    )
    return ok(
        PaymentStatsRead(
            from_at=stats.start,
            to_at=stats.end,
            revenue_cents=stats.revenue_cents,
            transactions=stats.transactions,
            by_status=[
                PaymentStatusCount(
                    status=external_status(b.status), count=b.count, total_cents=b.total_cents
                )
                for b in stats.by_status
            ],
            by_method=[PaymentMethodCount(method=b.method, count=b.count) for b in stats.by_method],
        )
    )


# =============================================================================
# Reconciliation and Refunds
# =============================================================================

@router.get("/reconciliations", response_model=Envelope[list[ReconciliationRead]])
def list_reconciliations(
    resolved: bool | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    session: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Payments whose gateway outcome disagreed with local state."""
    entries = payment_service.list_reconciliations(db, resolved=resolved, limit=limit)
    return ok(
        [
            ReconciliationRead(
                id=e.id,
                payment_id=e.payment_id,
                appointment_id=e.appointment_id,
                reason=e.reason,
                observed_status=external_status(e.observed_status),
                recorded_status=external_status(e.recorded_status),
                resolved=e.resolved,
                created_at=e.created_at,
            )
            for e in entries
        ]
    )


@router.post("/payments/{payment_id}/refund", response_model=Envelope[PaymentStatusRead])
def refund_payment(
    payment_id: UUID,
    data: RefundRequest | None = Body(default=None),
    session: AuthContext = Depends(require_admin),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """
    Record a refund made outside the system.

    The payment becomes REFUNDED and a confirmed appointment is cancelled.
    """
    outcome = orchestrator.refund(payment_id, session, reason=data.reason if data else None)
    payment = outcome.payment
    return ok(
        PaymentStatusRead(
            payment_id=payment.id,
            appointment_id=payment.appointment_id,
            merchant_txn_id=payment.merchant_txn_id,
            payment_status=external_status(payment.status),
            appointment_status=external_status(outcome.appointment.status),
            room_id=outcome.appointment.room_id,
        ),
        message="Refund recorded",
    )

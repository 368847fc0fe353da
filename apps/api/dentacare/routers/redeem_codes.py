"""Redeem codes router - validation for patients."""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from dentacare.core.clock import Clock
from dentacare.core.config import settings
from dentacare.core.deps import get_clock, get_current_session, get_db
from dentacare.core.rate_limit import REDEEM_VALIDATE_LIMIT, limiter
from dentacare.schemas.auth import AuthContext
from dentacare.schemas.common import Envelope, ok
from dentacare.schemas.redeem_code import RedeemQuoteRead
from dentacare.services import price_service, redeem_code_service
from dentacare.services.policy_engine import Operation, authorise

router = APIRouter()


@router.get("/{code}/validate", response_model=Envelope[RedeemQuoteRead])
@limiter.limit(REDEEM_VALIDATE_LIMIT)
def validate_redeem_code(
    request: Request,
    code: str,
    amount_cents: int | None = Query(None, alias="amountCents", ge=0),
    session: AuthContext = Depends(get_current_session),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """
    Price a code against an amount without using it.

    ``amountCents`` defaults to the virtual consultation price.
    """
    authorise(session, Operation.VALIDATE_REDEEM_CODE)
    price = amount_cents
    if price is None:
        price = price_service.current_virtual_price(db, settings)
    redeem, quote = redeem_code_service.quote(
        db, code, user_id=session.user_id, price_cents=price, now=clock.now()
    )
    return ok(
        RedeemQuoteRead(
            code=redeem.code,
            price_cents=quote.price_cents,
            discount_cents=quote.discount_cents,
            final_cents=quote.final_cents,
        )
    )

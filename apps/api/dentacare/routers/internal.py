"""
Internal endpoints for scheduled/cron operations.

Protected by X-Internal-Secret header.
Call from external cron when the worker's own sweep is not running.
"""

import hmac

from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from dentacare.core.clock import Clock
from dentacare.core.config import settings
from dentacare.core.deps import get_clock, get_db
from dentacare.core.errors import DentacareError, ErrorCode, PermissionDenied
from dentacare.schemas.common import ok
from dentacare.services import sweep_service

router = APIRouter(prefix="/internal/scheduled", tags=["internal"])


def verify_internal_secret(x_internal_secret: str = Header(...)) -> None:
    """Verify the internal secret header."""
    expected = settings.INTERNAL_SECRET
    if not expected:
        raise DentacareError("INTERNAL_SECRET not configured", ErrorCode.INTERNAL)
    if not hmac.compare_digest(x_internal_secret.encode(), expected.encode()):
        raise PermissionDenied("Invalid internal secret")


@router.post("/payment-sweep", dependencies=[Depends(verify_internal_secret)])
def run_payment_sweep(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """
    Expire stale payment holds and complete past appointments.

    Safe to call repeatedly; the worker runs the same sweep.
    """
    result = sweep_service.run_sweep(db, now=clock.now(), config=settings)
    return ok(result.as_dict(), message="Sweep completed")

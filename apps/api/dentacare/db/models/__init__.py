"""SQLAlchemy ORM models."""

from dentacare.db.models.users import User
from dentacare.db.models.redeem_codes import RedeemCode, RedemptionRecord
from dentacare.db.models.appointments import Appointment
from dentacare.db.models.payments import Payment, PaymentEvent, PaymentReconciliation
from dentacare.db.models.service_windows import AdminServiceWindow
from dentacare.db.models.prices import ServicePrice
from dentacare.db.models.rooms import Room
from dentacare.db.models.jobs import Job

__all__ = [
    "User",
    "RedeemCode",
    "RedemptionRecord",
    "Appointment",
    "Payment",
    "PaymentEvent",
    "PaymentReconciliation",
    "AdminServiceWindow",
    "ServicePrice",
    "Room",
    "Job",
]

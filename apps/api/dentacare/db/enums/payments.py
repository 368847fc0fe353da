"""Payment enums."""

from enum import Enum


class PaymentStatus(str, Enum):
    CREATED = "created"
    INITIATED = "initiated"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    EXPIRED = "expired"


NON_TERMINAL_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.CREATED, PaymentStatus.INITIATED, PaymentStatus.PROCESSING}
)


class PaymentMethod(str, Enum):
    PAY_PAGE = "pay_page"
    UPI = "upi"
    CARD = "card"
    NET_BANKING = "net_banking"
    FREE = "free"  # zero amount after discount


class GatewayStatus(str, Enum):
    """Normalised gateway outcome."""

    SUCCESS = "SUCCESS"
    PENDING = "PENDING"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    USER_DROP = "USER_DROP"


class PaymentEventSource(str, Enum):
    INITIATE = "initiate"
    CALLBACK = "callback"
    POLL = "poll"
    SWEEP = "sweep"
    USER_CANCEL = "user_cancel"
    ADMIN_REFUND = "admin_refund"


class ReconciliationReason(str, Enum):
    CONFLICTING_CALLBACK = "CONFLICTING_CALLBACK"
    OVERBOOKED_REFUND_PENDING = "overbooked_refund_pending"
    CANCELLED_REFUND_PENDING = "cancelled_refund_pending"

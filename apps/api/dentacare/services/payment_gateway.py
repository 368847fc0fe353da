"""Payment gateway adapter (PhonePe checkout API).

Wraps token acquisition, checkout session creation, order status polling
and callback checksum verification. Every failure leaving this module is a
GatewayError carrying one of four categories; callers never see httpx
exceptions.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

import anyio
import httpx

from dentacare.core.clock import Clock, SystemClock
from dentacare.core.config import Settings, settings as default_settings
from dentacare.core.errors import ErrorCode, UpstreamError
from dentacare.core.security import constant_time_equals, gateway_checksum
from dentacare.db.enums import GatewayStatus
from dentacare.services.http_service import CONNECT_PHASE_ERRORS, request_with_retries

logger = logging.getLogger(__name__)


# =============================================================================
# Endpoints
# =============================================================================

@dataclass(frozen=True)
class GatewayEndpoints:
    name: str
    token_url: str
    pay_url: str
    status_base_url: str


SANDBOX = GatewayEndpoints(
    name="sandbox",
    token_url="https://api-preprod.phonepe.com/apis/pg-sandbox/v1/oauth/token",
    pay_url="https://api-preprod.phonepe.com/apis/pg-sandbox/checkout/v2/pay",
    status_base_url="https://api-preprod.phonepe.com/apis/pg-sandbox/checkout/v2/order",
)

PRODUCTION = GatewayEndpoints(
    name="production",
    token_url="https://api.phonepe.com/apis/identity-manager/v1/oauth/token",
    pay_url="https://api.phonepe.com/apis/pg/checkout/v2/pay",
    status_base_url="https://api.phonepe.com/apis/pg/checkout/v2/order",
)

ENDPOINTS = {"sandbox": SANDBOX, "production": PRODUCTION}


def resolve_endpoints(env: str) -> GatewayEndpoints:
    try:
        return ENDPOINTS[env.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown GATEWAY_ENV '{env}' (expected sandbox or production)")


# =============================================================================
# Retry policy
# =============================================================================

RETRY_MAX_ATTEMPTS = 4
RETRY_BASE_DELAY = 0.25
RETRY_MAX_DELAY = 5.0
RETRY_STATUSES = {429, 500, 502, 503, 504}

# Hosted checkout link lifetime requested on session creation
SESSION_EXPIRE_AFTER_SECONDS = 1200


# =============================================================================
# Errors and results
# =============================================================================

class GatewayErrorCategory(str, Enum):
    AUTH = "AUTH"
    VALIDATION = "VALIDATION"
    RATE_LIMITED = "RATE_LIMITED"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"


_TRANSIENT_CATEGORIES = {
    GatewayErrorCategory.RATE_LIMITED,
    GatewayErrorCategory.UPSTREAM_UNAVAILABLE,
}


class GatewayError(UpstreamError):
    """Normalised gateway failure."""

    def __init__(self, category: GatewayErrorCategory, message: str, status_code: int | None = None):
        transient = category in _TRANSIENT_CATEGORIES
        code = ErrorCode.UPSTREAM_UNAVAILABLE if transient else ErrorCode.GATEWAY_REJECTED
        super().__init__(
            message,
            code,
            transient=transient,
            details=[{"category": category.value}],
        )
        self.category = category
        self.status_code = status_code


@dataclass(frozen=True)
class GatewaySession:
    gateway_order_id: str
    redirect_target: str
    expire_at: datetime | None
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayStatusResult:
    gateway_status: GatewayStatus
    gateway_order_id: str | None = None
    settlement_meta: dict = field(default_factory=dict)


@dataclass(frozen=True)
class CallbackEvent:
    merchant_txn_id: str
    gateway_status: GatewayStatus
    gateway_order_id: str | None
    settlement_meta: dict


# Order states from the status API and callback codes, normalised
_STATE_MAP = {
    "COMPLETED": GatewayStatus.SUCCESS,
    "SUCCESS": GatewayStatus.SUCCESS,
    "PAYMENT_SUCCESS": GatewayStatus.SUCCESS,
    "PENDING": GatewayStatus.PENDING,
    "PROCESSING": GatewayStatus.PENDING,
    "PAYMENT_PENDING": GatewayStatus.PENDING,
    "FAILED": GatewayStatus.FAILED,
    "FAILURE": GatewayStatus.FAILED,
    "PAYMENT_ERROR": GatewayStatus.FAILED,
    "PAYMENT_DECLINED": GatewayStatus.FAILED,
    "PAYMENT_FAILED": GatewayStatus.FAILED,
    "EXPIRED": GatewayStatus.TIMEOUT,
    "TIMED_OUT": GatewayStatus.TIMEOUT,
    "PAYMENT_EXPIRED": GatewayStatus.TIMEOUT,
    "CANCELLED": GatewayStatus.USER_DROP,
    "CANCELED": GatewayStatus.USER_DROP,
    "PAYMENT_CANCELLED": GatewayStatus.USER_DROP,
    "USER_CANCELLED": GatewayStatus.USER_DROP,
}


def normalise_gateway_state(raw_state: str | None) -> GatewayStatus | None:
    if not raw_state:
        return None
    return _STATE_MAP.get(str(raw_state).strip().upper())


def categorise_status(status_code: int) -> GatewayErrorCategory:
    if status_code in (401, 403):
        return GatewayErrorCategory.AUTH
    if status_code == 429:
        return GatewayErrorCategory.RATE_LIMITED
    if status_code >= 500:
        return GatewayErrorCategory.UPSTREAM_UNAVAILABLE
    return GatewayErrorCategory.VALIDATION


# Keys safe to keep from gateway responses
_SETTLEMENT_KEYS = (
    "orderId",
    "transactionId",
    "state",
    "code",
    "amount",
    "responseCode",
    "paymentMode",
    "errorCode",
    "detailedErrorCode",
)


def _settlement_meta(data: dict) -> dict:
    meta = {k: data[k] for k in _SETTLEMENT_KEYS if k in data}
    details = data.get("paymentDetails")
    if isinstance(details, list) and details and isinstance(details[0], dict):
        first = details[0]
        for key in ("transactionId", "paymentMode", "state", "errorCode"):
            if key in first and key not in meta:
                meta[key] = first[key]
    return meta


# =============================================================================
# Adapter
# =============================================================================

class PaymentGateway:
    """
    Wire adapter for the payment processor.

    One instance per process: the OAuth access token is cached here and
    refreshed by a single task at a time.
    """

    def __init__(
        self,
        config: Settings | None = None,
        *,
        clock: Clock | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._config = config or default_settings
        self._clock = clock or SystemClock()
        self._transport = transport
        self._sleep = sleep
        self.endpoints = resolve_endpoints(self._config.GATEWAY_ENV)
        self._token: str | None = None
        self._token_type: str = "O-Bearer"
        self._token_expires_at: datetime | None = None
        self._token_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=self._config.GATEWAY_TIMEOUT_SECONDS,
        )

    async def _send(
        self,
        build: Callable[[httpx.AsyncClient], Awaitable[httpx.Response]],
        *,
        idempotent: bool,
        operation: str,
    ) -> dict:
        deadline = self._config.GATEWAY_TIMEOUT_SECONDS
        try:
            async with self._client() as client:

                async def request_fn() -> httpx.Response:
                    with anyio.fail_after(deadline):
                        return await build(client)

                if idempotent:
                    response = await request_with_retries(
                        request_fn,
                        max_attempts=RETRY_MAX_ATTEMPTS,
                        base_delay=RETRY_BASE_DELAY,
                        max_delay=RETRY_MAX_DELAY,
                        retry_statuses=RETRY_STATUSES,
                        retry_on=(httpx.RequestError, TimeoutError),
                        jitter=False,
                        sleep=self._sleep,
                    )
                else:
                    # Only retried when the request provably never left
                    response = await request_with_retries(
                        request_fn,
                        max_attempts=RETRY_MAX_ATTEMPTS,
                        base_delay=RETRY_BASE_DELAY,
                        max_delay=RETRY_MAX_DELAY,
                        retry_statuses=set(),
                        retry_on=CONNECT_PHASE_ERRORS,
                        jitter=False,
                        sleep=self._sleep,
                    )
        except (httpx.RequestError, TimeoutError) as exc:
            logger.warning("Gateway %s failed: %s", operation, type(exc).__name__)
            raise GatewayError(
                GatewayErrorCategory.UPSTREAM_UNAVAILABLE,
                f"Payment gateway unreachable during {operation}",
            ) from exc

        if not 200 <= response.status_code < 300:
            category = categorise_status(response.status_code)
            logger.warning(
                "Gateway %s returned %s (%s)", operation, response.status_code, category.value
            )
            raise GatewayError(
                category,
                f"Payment gateway {operation} failed with status {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayError(
                GatewayErrorCategory.UPSTREAM_UNAVAILABLE,
                f"Payment gateway {operation} returned invalid JSON",
                status_code=response.status_code,
            ) from exc
        if not isinstance(data, dict):
            raise GatewayError(
                GatewayErrorCategory.UPSTREAM_UNAVAILABLE,
                f"Payment gateway {operation} returned unexpected body",
                status_code=response.status_code,
            )
        return data

    # ------------------------------------------------------------------
    # Token
    # ------------------------------------------------------------------

    def _token_is_fresh(self) -> bool:
        if not self._token or not self._token_expires_at:
            return False
        skew = timedelta(seconds=self._config.GATEWAY_TOKEN_REFRESH_SKEW_SECONDS)
        return self._clock.now() < self._token_expires_at - skew

    async def acquire_access_token(self) -> str:
        """Return a cached bearer token, refreshing it near expiry."""
        if self._token_is_fresh():
            return self._token  # type: ignore[return-value]

        async with self._token_lock:
            # Another task may have refreshed while we waited
            if self._token_is_fresh():
                return self._token  # type: ignore[return-value]

            form = {
                "client_id": self._config.GATEWAY_CLIENT_ID,
                "client_version": self._config.GATEWAY_CLIENT_VERSION,
                "client_secret": self._config.GATEWAY_CLIENT_SECRET,
                "grant_type": "client_credentials",
            }
            data = await self._send(
                lambda client: client.post(self.endpoints.token_url, data=form),
                idempotent=True,
                operation="token",
            )
            token = data.get("access_token")
            if not token:
                raise GatewayError(
                    GatewayErrorCategory.AUTH, "Payment gateway returned no access token"
                )
            expires_at = data.get("expires_at")
            if isinstance(expires_at, (int, float)):
                self._token_expires_at = datetime.fromtimestamp(expires_at, tz=timezone.utc)
            else:
                expires_in = data.get("expires_in") or 3600
                self._token_expires_at = self._clock.now() + timedelta(seconds=int(expires_in))
            self._token = token
            self._token_type = data.get("token_type") or "O-Bearer"
            logger.info("Gateway access token refreshed (expires_at=%s)", self._token_expires_at)
            return token

    async def _auth_headers(self) -> dict[str, str]:
        token = await self.acquire_access_token()
        return {
            "Authorization": f"{self._token_type} {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_session(
        self,
        *,
        merchant_txn_id: str,
        amount_cents: int,
        currency: str,
        callback_url: str | None = None,
        redirect_url: str | None = None,
        payer: dict[str, Any] | None = None,
    ) -> GatewaySession:
        """Create a hosted checkout session for ``amount_cents`` (paise)."""
        headers = await self._auth_headers()
        payer = payer or {}
        body = {
            "merchantOrderId": merchant_txn_id,
            "amount": amount_cents,
            "currency": currency,
            "expireAfter": SESSION_EXPIRE_AFTER_SECONDS,
            "metaInfo": {
                "udf1": str(payer.get("user_id", "")),
                "udf2": str(payer.get("appointment_id", "")),
            },
            "paymentFlow": {
                "type": "PG_CHECKOUT",
                "message": "Virtual consultation",
                "merchantUrls": {
                    "redirectUrl": redirect_url or self._config.GATEWAY_REDIRECT_URL,
                    "callbackUrl": callback_url or self._config.GATEWAY_CALLBACK_URL,
                },
            },
        }
        data = await self._send(
            lambda client: client.post(self.endpoints.pay_url, json=body, headers=headers),
            idempotent=False,
            operation="create_session",
        )

        order_id = data.get("orderId")
        redirect = data.get("redirectUrl")
        if not order_id or not redirect:
            raise GatewayError(
                GatewayErrorCategory.VALIDATION,
                "Payment gateway did not return an order",
            )
        expire_at = None
        if isinstance(data.get("expireAt"), (int, float)):
            expire_at = datetime.fromtimestamp(data["expireAt"] / 1000, tz=timezone.utc)
        return GatewaySession(
            gateway_order_id=str(order_id),
            redirect_target=str(redirect),
            expire_at=expire_at,
            raw=_settlement_meta(data),
        )

    async def fetch_status(self, merchant_txn_id: str) -> GatewayStatusResult:
        """Fetch the authoritative order state."""
        headers = await self._auth_headers()
        url = f"{self.endpoints.status_base_url}/{merchant_txn_id}/status"
        data = await self._send(
            lambda client: client.get(url, headers=headers),
            idempotent=True,
            operation="fetch_status",
        )
        status = normalise_gateway_state(data.get("state"))
        if status is None:
            raise GatewayError(
                GatewayErrorCategory.UPSTREAM_UNAVAILABLE,
                f"Unrecognised gateway state '{data.get('state')}'",
            )
        return GatewayStatusResult(
            gateway_status=status,
            gateway_order_id=data.get("orderId"),
            settlement_meta=_settlement_meta(data),
        )

    async def cancel_session(self, merchant_txn_id: str) -> GatewayStatusResult | None:
        """
        Best-effort cancellation.

        The checkout API has no order-cancel call: unpaid orders lapse at
        ``expireAfter``. What matters before a local cancel is whether the
        order was already paid, so this returns the current upstream state
        (None when the gateway cannot be reached).
        """
        try:
            return await self.fetch_status(merchant_txn_id)
        except GatewayError as exc:
            logger.warning(
                "Gateway cancel check failed for %s: %s", merchant_txn_id, exc.category.value
            )
            return None

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def expected_signature(self, encoded_response: str) -> str:
        return gateway_checksum(
            encoded_response,
            self._config.GATEWAY_SALT_KEY,
            self._config.GATEWAY_SALT_INDEX,
        )

    def verify_signature(self, raw_body: bytes, header: str | None) -> bool:
        """Constant-time check of the X-VERIFY header against the body."""
        if not header or not self._config.GATEWAY_SALT_KEY:
            return False
        encoded = _extract_encoded_response(raw_body)
        if encoded is None:
            return False
        return constant_time_equals(self.expected_signature(encoded), header.strip())

    def decode_callback(self, raw_body: bytes) -> CallbackEvent:
        """Decode a verified callback body. Raises ValueError when malformed."""
        encoded = _extract_encoded_response(raw_body)
        if encoded is None:
            raise ValueError("Callback body has no response field")
        try:
            decoded = json.loads(base64.b64decode(encoded, validate=True))
        except (binascii.Error, ValueError) as exc:
            raise ValueError("Callback response is not base64 JSON") from exc
        if not isinstance(decoded, dict):
            raise ValueError("Callback response is not an object")

        data = decoded.get("data") or {}
        if not isinstance(data, dict):
            raise ValueError("Callback data is not an object")
        merchant_txn_id = (
            data.get("merchantTransactionId")
            or data.get("merchantOrderId")
            or decoded.get("merchantOrderId")
        )
        if not merchant_txn_id:
            raise ValueError("Callback has no merchant transaction id")

        status = normalise_gateway_state(decoded.get("code")) or normalise_gateway_state(
            data.get("state")
        )
        if status is None:
            raise ValueError(f"Unrecognised callback status '{decoded.get('code')}'")

        meta = _settlement_meta(data)
        if decoded.get("code"):
            meta.setdefault("code", decoded["code"])
        return CallbackEvent(
            merchant_txn_id=str(merchant_txn_id),
            gateway_status=status,
            gateway_order_id=data.get("orderId"),
            settlement_meta=meta,
        )


def _extract_encoded_response(raw_body: bytes) -> str | None:
    try:
        body = json.loads(raw_body or b"{}")
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    encoded = body.get("response")
    if not isinstance(encoded, str) or not encoded:
        return None
    return encoded

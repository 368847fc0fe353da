"""
Test configuration and fixtures.

Provides:
- In-memory SQLite schema created per test
- Fixed clock and sequential identifiers
- A fake PhonePe checkout API served through httpx.MockTransport
- Session token minting and an AsyncClient wired to the app
"""
import base64
import json
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncGenerator, Callable, Generator

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TESTING"] = "1"
os.environ["ENV"] = "test"
os.environ["SENTRY_DSN"] = ""
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["ROOM_SIGNING_SECRET"] = "test-room-secret"
os.environ["INTERNAL_SECRET"] = "test-internal-secret"
os.environ["GATEWAY_ENV"] = "sandbox"
os.environ["GATEWAY_MERCHANT_ID"] = "DENTACARETEST"
os.environ["GATEWAY_CLIENT_ID"] = "test-client"
os.environ["GATEWAY_CLIENT_SECRET"] = "test-client-secret"
os.environ["GATEWAY_SALT_KEY"] = "test-salt"
os.environ["GATEWAY_SALT_INDEX"] = "1"
os.environ["RESEND_API_KEY"] = ""
os.environ["FCM_SERVER_KEY"] = ""

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from dentacare.core.clock import FixedClock
from dentacare.core.config import settings
from dentacare.core.deps import (
    COOKIE_NAME,
    get_clock,
    get_db,
    get_id_gen,
    get_payment_gateway,
)
from dentacare.core.security import create_session_token, gateway_checksum
from dentacare.db.base import Base
from dentacare.db.enums import Role
from dentacare.db.models import Appointment, User
from dentacare.db.session import SessionLocal, engine
from dentacare.main import app
from dentacare.schemas.appointment import VirtualAppointmentCreate
from dentacare.schemas.auth import AuthContext
from dentacare.services import appointment_service
from dentacare.services.payment_callback_service import CallbackHandler
from dentacare.services.payment_gateway import PaymentGateway
from dentacare.services.payment_service import PaymentOrchestrator


# 09:30 in Asia/Kolkata
T0 = datetime(2025, 3, 1, 4, 0, tzinfo=timezone.utc)
# 15:30 in Asia/Kolkata
SLOT = datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc)


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Fresh schema per test.

    The in-memory engine uses a StaticPool, so the app, the services and
    the test all see the same connection.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


# =============================================================================
# Clock and Identifiers
# =============================================================================

@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(T0)


@pytest.fixture
def slot() -> datetime:
    return SLOT


class SequentialIds:
    """Deterministic merchant transaction and room ids."""

    def __init__(self):
        self._txn = 0
        self._room = 0

    def merchant_txn_id(self) -> str:
        self._txn += 1
        return f"T-{self._txn:04d}"

    def room_id(self) -> str:
        self._room += 1
        return f"room-{self._room}"


@pytest.fixture
def id_gen() -> SequentialIds:
    return SequentialIds()


# =============================================================================
# Fake Gateway
# =============================================================================

class FakePhonePe:
    """
    In-process stand-in for the PhonePe checkout API.

    ``fail(operation, *outcomes)`` queues HTTP status codes or httpx
    exception classes that are served before normal responses.
    """

    def __init__(self):
        self.calls: list[str] = []
        self.orders: dict[str, dict] = {}
        self.pay_bodies: list[dict] = []
        self.auth_headers: list[str] = []
        self.order_state = "PENDING"
        self.states: dict[str, str] = {}
        self._failures: dict[str, list] = {"token": [], "pay": [], "status": []}
        self._tokens = 0

    def fail(self, operation: str, *outcomes) -> None:
        self._failures[operation].extend(outcomes)

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call == operation)

    @staticmethod
    def _operation(request: httpx.Request) -> str:
        path = request.url.path
        if path.endswith("/oauth/token"):
            return "token"
        if path.endswith("/pay"):
            return "pay"
        if path.endswith("/status"):
            return "status"
        raise AssertionError(f"Unexpected gateway call: {request.method} {path}")

    def __call__(self, request: httpx.Request) -> httpx.Response:
        operation = self._operation(request)
        self.calls.append(operation)
        if operation != "token":
            self.auth_headers.append(request.headers.get("Authorization", ""))

        if self._failures[operation]:
            outcome = self._failures[operation].pop(0)
            if isinstance(outcome, type) and issubclass(outcome, Exception):
                raise outcome("simulated failure", request=request)
            return httpx.Response(outcome, json={"code": "ERROR", "message": "simulated"})

        if operation == "token":
            self._tokens += 1
            return httpx.Response(
                200,
                json={
                    "access_token": f"tok-{self._tokens}",
                    "expires_in": 3600,
                    "token_type": "O-Bearer",
                },
            )

        if operation == "pay":
            body = json.loads(request.content)
            self.pay_bodies.append(body)
            number = len(self.orders) + 1
            order = {"orderId": f"OMO{number:04d}", "amount": body["amount"]}
            self.orders[body["merchantOrderId"]] = order
            return httpx.Response(
                200,
                json={
                    "orderId": order["orderId"],
                    "state": "PENDING",
                    "expireAt": 1740801600000,
                    "redirectUrl": f"https://mercury-uat.phonepe.com/transact/{number}",
                },
            )

        merchant_txn_id = request.url.path.rstrip("/").split("/")[-2]
        order = self.orders.get(merchant_txn_id)
        if order is None:
            return httpx.Response(404, json={"code": "NOT_FOUND"})
        return httpx.Response(
            200,
            json={
                "orderId": order["orderId"],
                "state": self.states.get(merchant_txn_id, self.order_state),
                "amount": order["amount"],
            },
        )


async def _no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def phonepe() -> FakePhonePe:
    return FakePhonePe()


@pytest.fixture
def gateway(phonepe: FakePhonePe, clock: FixedClock) -> PaymentGateway:
    return PaymentGateway(
        settings,
        clock=clock,
        transport=httpx.MockTransport(phonepe),
        sleep=_no_sleep,
    )


@pytest.fixture
def sign_callback() -> Callable[..., tuple[bytes, str]]:
    """Build a gateway callback body and its X-VERIFY header."""

    def _sign(
        merchant_txn_id: str,
        code: str = "PAYMENT_SUCCESS",
        state: str = "COMPLETED",
        order_id: str | None = None,
        salt_key: str = "test-salt",
    ) -> tuple[bytes, str]:
        payload = {
            "success": True,
            "code": code,
            "data": {
                "merchantId": "DENTACARETEST",
                "merchantTransactionId": merchant_txn_id,
                "orderId": order_id or f"OMO-{merchant_txn_id}",
                "state": state,
                "amount": 50000,
            },
        }
        encoded = base64.b64encode(json.dumps(payload).encode()).decode()
        body = json.dumps({"response": encoded}).encode()
        return body, gateway_checksum(encoded, salt_key, "1")

    return _sign


# =============================================================================
# Users and Auth
# =============================================================================

@pytest.fixture
def make_user(db: Session) -> Callable[..., User]:
    def _make(
        role: Role = Role.PATIENT,
        name: str | None = None,
        email: str | None = None,
        push_token: str | None = None,
    ) -> User:
        suffix = uuid.uuid4().hex[:8]
        user = User(
            id=uuid.uuid4(),
            name=name or f"{role.value}-{suffix}",
            email=email if email is not None else f"{role.value}-{suffix}@dentacare.in",
            role=role.value,
            push_token=push_token,
            is_active=True,
            token_version=1,
            created_at=datetime.now(timezone.utc),
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def patient(make_user) -> User:
    return make_user(Role.PATIENT, name="Patient One")


@pytest.fixture
def other_patient(make_user) -> User:
    return make_user(Role.PATIENT, name="Patient Two")


@pytest.fixture
def doctor(make_user) -> User:
    return make_user(Role.VIRTUAL_DOCTOR, name="Dr. Virtual")


@pytest.fixture
def admin(make_user) -> User:
    return make_user(Role.ADMIN, name="Clinic Admin")


def actor_for(user: User) -> AuthContext:
    return AuthContext(
        user_id=user.id,
        role=Role(user.role),
        email=user.email,
        display_name=user.name,
    )


@pytest.fixture
def actor() -> Callable[[User], AuthContext]:
    return actor_for


@dataclass
class TestAuth:
    """Session token for one test user."""
    user: User
    token: str
    cookie_name: str = COOKIE_NAME

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


@pytest.fixture
def auth() -> Callable[[User], TestAuth]:
    def _auth(user: User) -> TestAuth:
        token = create_session_token(
            user_id=user.id,
            role=user.role,
            token_version=user.token_version,
        )
        return TestAuth(user=user, token=token)

    return _auth


# =============================================================================
# Service Fixtures
# =============================================================================

@pytest.fixture
def book(db, clock, slot, doctor) -> Callable[..., Appointment]:
    """Book a virtual appointment through the service layer."""

    def _book(user: User, scheduled_at: datetime | None = None, **kwargs) -> Appointment:
        kwargs.setdefault("doctor_ref", doctor.id)
        data = VirtualAppointmentCreate(scheduled_at=scheduled_at or slot, **kwargs)
        result = appointment_service.book_virtual(db, actor_for(user), data, clock=clock)
        return result.appointment

    return _book


@pytest.fixture
def orchestrator(db, gateway, clock, id_gen) -> PaymentOrchestrator:
    return PaymentOrchestrator(db, gateway, clock, id_gen, settings)


@pytest.fixture
def callback_handler(db, gateway, clock, id_gen) -> CallbackHandler:
    return CallbackHandler(db, gateway, clock, id_gen, settings)


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db, clock, gateway, id_gen) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient bound to the app with the test session, clock and gateway."""

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_id_gen] = lambda: id_gen

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()

"""FastAPI dependencies for authentication, authorization, and database access."""

from functools import lru_cache
from typing import Generator
from uuid import UUID

import jwt
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from dentacare.core.clock import Clock, SystemClock
from dentacare.core.config import settings
from dentacare.core.errors import AuthenticationError, PermissionDenied
from dentacare.core.ids import IdGen, IdGenerator
from dentacare.core.security import decode_session_token
from dentacare.db.enums import Role
from dentacare.db.models import User
from dentacare.db.session import SessionLocal
from dentacare.schemas.auth import AuthContext
from dentacare.services.payment_callback_service import CallbackHandler
from dentacare.services.payment_gateway import PaymentGateway
from dentacare.services.payment_service import PaymentOrchestrator


# Cookie name for browser sessions; mobile clients send a Bearer header
COOKIE_NAME = "dentacare_session"


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_clock() -> Clock:
    return SystemClock()


def get_id_gen() -> IdGen:
    return IdGenerator()


@lru_cache
def get_payment_gateway() -> PaymentGateway:
    """Process-wide gateway adapter (holds the cached access token)."""
    return PaymentGateway(settings)


def _extract_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return request.cookies.get(COOKIE_NAME)


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    """
    Get authenticated user from the Bearer header or session cookie.

    Validates:
    - Token exists
    - JWT is valid and not expired
    - User exists and is active
    - Token version matches (for revocation support)

    Raises:
        AuthenticationError: Authentication failed (401)
    """
    token = _extract_token(request)
    if not token:
        raise AuthenticationError("Not authenticated")

    try:
        payload = decode_session_token(token)
        user_id = UUID(str(payload.get("sub")))
    except (jwt.InvalidTokenError, ValueError):
        raise AuthenticationError("Invalid session")

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise AuthenticationError("User not found")

    if not user.is_active:
        raise AuthenticationError("Account disabled")

    # Token version check (revocation support)
    if user.token_version != payload.get("token_version"):
        raise AuthenticationError("Session revoked")

    return user


def get_current_session(request: Request, db: Session = Depends(get_db)) -> AuthContext:
    """
    Get the caller's identity and role.

    This is the PRIMARY auth dependency for most endpoints.

    Raises:
        AuthenticationError: Not authenticated (401)
        PermissionDenied: Unknown role (403)
    """
    user = get_current_user(request, db)

    # Validate role is a known enum value - return 403 not 500
    try:
        role = Role(user.role)
    except ValueError:
        raise PermissionDenied(f"Unknown role '{user.role}'. Contact administrator.")

    return AuthContext(
        user_id=user.id,
        role=role,
        email=user.email,
        display_name=user.name,
    )


def require_roles(allowed_roles: list[Role]):
    """
    Dependency factory for role-based authorization.

    Usage:
        @router.get("/admin/...", dependencies=[Depends(require_roles([Role.ADMIN]))])
    """
    def dependency(request: Request, db: Session = Depends(get_db)) -> AuthContext:
        session = get_current_session(request, db)
        if session.role not in allowed_roles:
            raise PermissionDenied(
                f"Role '{session.role.value}' not authorized for this action"
            )
        return session

    return dependency


def get_payment_orchestrator(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    clock: Clock = Depends(get_clock),
    id_gen: IdGen = Depends(get_id_gen),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(db, gateway, clock, id_gen, settings)


def get_callback_handler(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    clock: Clock = Depends(get_clock),
    id_gen: IdGen = Depends(get_id_gen),
) -> CallbackHandler:
    return CallbackHandler(db, gateway, clock, id_gen, settings)

"""Security utilities for JWT session tokens and gateway checksums."""

import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from uuid import UUID

import jwt

from dentacare.core.config import settings


# =============================================================================
# Session Token (JWT in cookie or Authorization header)
# =============================================================================

def create_session_token(
    user_id: UUID,
    role: str,
    token_version: int,
    now: datetime | None = None,
) -> str:
    """
    Create signed session JWT.

    Always signs with current secret (JWT_SECRET).
    Token contains user identity, role, and revocation version.
    """
    issued_at = now or datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "token_version": token_version,
        "iat": issued_at,
        "exp": issued_at + timedelta(hours=settings.JWT_EXPIRES_HOURS),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def decode_session_token(token: str) -> dict:
    """
    Decode and verify session JWT.

    Tries current secret first, then previous (for rotation support).

    Raises:
        jwt.InvalidTokenError: If token invalid with all secrets
    """
    last_error = None
    for secret in settings.jwt_secrets:
        try:
            return jwt.decode(token, secret, algorithms=["HS256"])
        except jwt.InvalidTokenError as e:
            last_error = e
            continue
    raise last_error  # type: ignore


# =============================================================================
# Gateway checksum (X-VERIFY)
# =============================================================================

def gateway_checksum(payload: str, salt_key: str, salt_index: str) -> str:
    """Return ``sha256(payload + salt_key) + "###" + salt_index``."""
    digest = hashlib.sha256(f"{payload}{salt_key}".encode()).hexdigest()
    return f"{digest}###{salt_index}"


def constant_time_equals(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode(), right.encode())

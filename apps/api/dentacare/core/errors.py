"""Error taxonomy shared by every component.

Components raise DentacareError subclasses; the HTTP edge (main.py) turns
them into the error envelope. Each error carries a kind (which decides the
HTTP status) and a symbolic code (which clients switch on).
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Error class -> HTTP status."""

    VALIDATION = "validation"
    AUTH = "auth"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    UPSTREAM_TRANSIENT = "upstream_transient"
    UPSTREAM_FATAL = "upstream_fatal"
    INTERNAL = "internal"

    @property
    def http_status(self) -> int:
        return _KIND_STATUS[self]


_KIND_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTH: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.UPSTREAM_TRANSIENT: 503,
    ErrorKind.UPSTREAM_FATAL: 502,
    ErrorKind.INTERNAL: 500,
}


class ErrorCode(str, Enum):
    """Symbolic failure reasons."""

    # Validation / policy
    VALIDATION_ERROR = "VALIDATION_ERROR"
    OUT_OF_WINDOW = "OUT_OF_WINDOW"
    REDEEM_NOT_FOUND = "REDEEM_NOT_FOUND"
    REDEEM_EXPIRED = "REDEEM_EXPIRED"
    REDEEM_INACTIVE = "REDEEM_INACTIVE"
    REDEEM_BELOW_MIN = "REDEEM_BELOW_MIN"
    REDEEM_EXHAUSTED = "REDEEM_EXHAUSTED"
    REDEEM_USER_EXHAUSTED = "REDEEM_USER_EXHAUSTED"
    REDEEM_NOT_APPLICABLE = "REDEEM_NOT_APPLICABLE"
    BAD_SIGNATURE = "BAD_SIGNATURE"

    # Auth
    UNAUTHENTICATED = "UNAUTHENTICATED"
    FORBIDDEN = "FORBIDDEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_INVALID = "TOKEN_INVALID"
    NOT_PARTICIPANT = "NOT_PARTICIPANT"
    REVOKED = "REVOKED"

    # Lookup
    NOT_FOUND = "NOT_FOUND"
    ROOM_NOT_FOUND = "ROOM_NOT_FOUND"

    # Conflict
    SLOT_TAKEN = "SLOT_TAKEN"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    CONFLICTING_CALLBACK = "CONFLICTING_CALLBACK"
    DUPLICATE = "DUPLICATE"
    REDEEM_IN_USE = "REDEEM_IN_USE"

    # Upstream
    GATEWAY_REJECTED = "GATEWAY_REJECTED"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    RATE_LIMITED = "RATE_LIMITED"

    INTERNAL = "INTERNAL"


class DentacareError(Exception):
    """Base exception for domain errors."""

    kind: ErrorKind = ErrorKind.INTERNAL
    default_code: ErrorCode = ErrorCode.INTERNAL

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        *,
        details: list[dict] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or []

    @property
    def http_status(self) -> int:
        return self.kind.http_status

    def to_details(self) -> list[dict]:
        return [{"reason": self.code.value}, *self.details]


class PolicyViolation(DentacareError):
    """Input rejected by a booking or pricing rule."""

    kind = ErrorKind.VALIDATION
    default_code = ErrorCode.VALIDATION_ERROR


class AuthenticationError(DentacareError):
    kind = ErrorKind.AUTH
    default_code = ErrorCode.UNAUTHENTICATED


class PermissionDenied(DentacareError):
    kind = ErrorKind.FORBIDDEN
    default_code = ErrorCode.FORBIDDEN


class NotFound(DentacareError):
    kind = ErrorKind.NOT_FOUND
    default_code = ErrorCode.NOT_FOUND


class Conflict(DentacareError):
    kind = ErrorKind.CONFLICT
    default_code = ErrorCode.INVALID_TRANSITION


class UpstreamError(DentacareError):
    """Gateway or other collaborator failure, already normalised."""

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        *,
        transient: bool,
        details: list[dict] | None = None,
    ):
        super().__init__(message, code, details=details)
        self.transient = transient
        self.kind = ErrorKind.UPSTREAM_TRANSIENT if transient else ErrorKind.UPSTREAM_FATAL
        if code is None:
            self.code = ErrorCode.UPSTREAM_UNAVAILABLE if transient else ErrorCode.GATEWAY_REJECTED


class StoreError(DentacareError):
    """Database failure mapped at the component boundary."""

    kind = ErrorKind.INTERNAL
    default_code = ErrorCode.INTERNAL

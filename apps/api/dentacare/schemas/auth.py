"""Authentication-related Pydantic schemas."""

from uuid import UUID

from pydantic import BaseModel

from dentacare.db.enums import Role


class TokenPayload(BaseModel):
    """Decoded JWT payload structure."""
    sub: UUID  # user_id
    role: str
    token_version: int


class AuthContext(BaseModel):
    """
    Session context for authenticated requests.

    Returned by the get_current_session dependency and carried through
    every service call that needs the caller's identity.
    """
    user_id: UUID
    role: Role  # Validated enum
    email: str | None = None
    display_name: str

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

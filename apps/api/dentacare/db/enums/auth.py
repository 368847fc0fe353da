"""Auth enums."""

from enum import Enum


class Role(str, Enum):
    PATIENT = "user"
    DOCTOR = "doctor"
    VIRTUAL_DOCTOR = "virtual_doctor"
    ADMIN = "admin"


DOCTOR_ROLES = frozenset({Role.DOCTOR, Role.VIRTUAL_DOCTOR})

"""Response envelopes and shared schema helpers."""

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

DataT = TypeVar("DataT")


class CamelModel(BaseModel):
    """Wire models use camelCase; Python code uses snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Envelope(BaseModel, Generic[DataT]):
    status: str = "success"
    code: int = 200
    message: str = "OK"
    data: DataT


class ErrorEnvelope(BaseModel):
    status: str = "error"
    code: int
    message: str
    details: list[dict[str, Any]] | None = None


def ok(data: Any, message: str = "OK", code: int = 200) -> Envelope:
    return Envelope(code=code, message=message, data=data)


def error_body(code: int, message: str, details: list[dict] | None = None) -> dict:
    body = ErrorEnvelope(code=code, message=message, details=details or None)
    return body.model_dump(exclude_none=True)


def external_status(value: str) -> str:
    """Statuses are exposed upper-case (``pending_payment`` -> ``PENDING_PAYMENT``)."""
    return value.upper()

"""Structured logging helpers (no secrets, no raw gateway payloads)."""

from typing import Any


def build_log_context(
    *,
    user_id: str | None = None,
    appointment_id: str | None = None,
    payment_id: str | None = None,
    merchant_txn_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a log context dict suitable for ``extra=``."""
    context: dict[str, Any] = {}
    if user_id:
        context["user_id"] = user_id
    if appointment_id:
        context["appointment_id"] = appointment_id
    if payment_id:
        context["payment_id"] = payment_id
    if merchant_txn_id:
        context["merchant_txn_id"] = merchant_txn_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context

"""Opaque identifier generation for merchant transactions and rooms."""

from __future__ import annotations

import secrets
import uuid
from typing import Protocol


class IdGen(Protocol):
    def merchant_txn_id(self) -> str: ...

    def room_id(self) -> str: ...


class IdGenerator:
    """
    Random identifiers, unique across processes.

    Merchant transaction IDs stay within the gateway limit of 35 chars
    (alphanumeric, underscore, hyphen). Uniqueness is also enforced by the
    database constraints on payments.merchant_txn_id and rooms.room_id.
    """

    MERCHANT_PREFIX = "TXN"

    def merchant_txn_id(self) -> str:
        return f"{self.MERCHANT_PREFIX}_{uuid.uuid4().hex[:24].upper()}"

    def room_id(self) -> str:
        return secrets.token_urlsafe(18)

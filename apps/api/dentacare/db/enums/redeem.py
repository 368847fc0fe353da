"""Redeem code enums."""

from enum import Enum


class DiscountKind(str, Enum):
    PERCENT = "percent"
    FLAT = "flat"


class RedeemApplicability(str, Enum):
    ALL = "all"
    VIRTUAL_ONLY = "virtual_only"

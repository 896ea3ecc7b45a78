"""Interfaces of the external services the booking lifecycle calls into."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol


@dataclass
class PaymentResult:
    success: bool
    reference: str | None = None
    error: str | None = None


class PaymentProcessor(Protocol):
    """Charges a guest. May return a failed result or raise ``PaymentFailure``."""

    def charge(self, amount: Decimal, payment_details: dict[str, Any]) -> PaymentResult: ...

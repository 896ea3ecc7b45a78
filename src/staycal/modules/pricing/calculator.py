"""Nightly and total price arithmetic over availability days."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Protocol, Sequence

from staycal.errors import ValidationError

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


class PricedDay(Protocol):
    date: date
    price_modifier: float
    min_stay_nights: int


@dataclass
class NightlyPrice:
    date: date
    price_modifier: Decimal
    price: Decimal


@dataclass
class PriceQuote:
    base_price: Decimal
    nights: int
    total: Decimal
    nightly: list[NightlyPrice] = field(default_factory=list)

    @property
    def average_nightly(self) -> Decimal:
        if not self.nights:
            return Decimal("0.00")
        return (self.total / self.nights).quantize(CENTS, rounding=ROUND_HALF_UP)


def to_decimal(value: Decimal | float | int | str, name: str = "value") -> Decimal:
    """Convert through ``str`` so float inputs like 1.2 stay exact."""
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{name} is not a number: {value!r}") from exc


class PriceCalculator:
    """Base price times per-day modifier, rounded to cents per night."""

    def nightly_price(self, base_price: Decimal | float, modifier: Decimal | float) -> Decimal:
        base = to_decimal(base_price, "base_price")
        mod = to_decimal(modifier, "price_modifier")
        if base < 0:
            raise ValidationError(f"Base price must not be negative, got {base}")
        if mod <= 0:
            raise ValidationError(f"Price modifier must be positive, got {mod}")
        return (base * mod).quantize(CENTS, rounding=ROUND_HALF_UP)

    def total_price(self, base_price: Decimal | float, days: Sequence[PricedDay]) -> Decimal:
        """Sum of rounded nightly prices, one night per day in the stay."""
        return sum(
            (self.nightly_price(base_price, day.price_modifier) for day in days),
            Decimal("0.00"),
        )

    def quote(self, base_price: Decimal | float, days: Sequence[PricedDay]) -> PriceQuote:
        nightly = [
            NightlyPrice(
                date=day.date,
                price_modifier=to_decimal(day.price_modifier),
                price=self.nightly_price(base_price, day.price_modifier),
            )
            for day in days
        ]
        total = sum((n.price for n in nightly), Decimal("0.00"))
        return PriceQuote(
            base_price=to_decimal(base_price, "base_price"),
            nights=len(nightly),
            total=total,
            nightly=nightly,
        )

    @staticmethod
    def required_min_stay(days: Sequence[PricedDay]) -> int:
        return max((day.min_stay_nights or 1 for day in days), default=1)

    @staticmethod
    def allowed_max_stay(days: Sequence[PricedDay]) -> int | None:
        limits = [d.max_stay_nights for d in days if getattr(d, "max_stay_nights", None)]
        return min(limits) if limits else None

    def check_min_stay(self, nights: int, days: Sequence[PricedDay]) -> None:
        if nights < 1:
            raise ValidationError("A stay must be at least one night")
        required = self.required_min_stay(days)
        if nights < required:
            raise ValidationError(f"Minimum stay is {required} nights, requested {nights}")

    def check_stay_length(self, nights: int, days: Sequence[PricedDay]) -> None:
        """Minimum stay plus any per-day maximum stay."""
        self.check_min_stay(nights, days)
        limit = self.allowed_max_stay(days)
        if limit is not None and nights > limit:
            raise ValidationError(f"Maximum stay is {limit} nights, requested {nights}")

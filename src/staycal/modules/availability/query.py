"""Range reads, default fill and occupancy statistics."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

from staycal.config import section
from staycal.dates import Clock, date_range, nights_between, utcnow, validate_range
from staycal.errors import ValidationError
from staycal.models.availability import (
    DEFAULT_MIN_STAY_NIGHTS,
    DEFAULT_PRICE_MODIFIER,
    AvailabilityDay,
    AvailabilityStatus,
)
from staycal.modules.availability.store import AvailabilityStore
from staycal.modules.pricing.calculator import PriceCalculator, PriceQuote

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DayAvailability:
    listing_id: str
    date: date
    status: str
    price_modifier: float = DEFAULT_PRICE_MODIFIER
    min_stay_nights: int = DEFAULT_MIN_STAY_NIGHTS
    max_stay_nights: int | None = None
    notes: str | None = None
    reserved_until: datetime | None = None
    stored: bool = False

    @property
    def is_available(self) -> bool:
        return self.status == AvailabilityStatus.AVAILABLE


@dataclass
class AvailabilityStats:
    total_days: int
    available: int
    booked: int
    blocked_or_maintenance: int
    reserved: int
    occupancy_rate: float
    avg_price_modifier: float


@dataclass
class AvailabilityCheck:
    listing_id: str
    check_in: date
    check_out: date
    total_nights: int
    is_available: bool
    unavailable_dates: list[date] = field(default_factory=list)
    min_stay_nights: int = 1
    max_stay_nights: int | None = None
    meets_stay_rules: bool = True
    quote: PriceQuote | None = None

    @property
    def total_price(self) -> Decimal | None:
        return self.quote.total if self.quote else None


def to_view(listing_id: str, day: date, row: AvailabilityDay | None, now: datetime) -> DayAvailability:
    """Snapshot of one day with defaults and lazy hold expiry applied."""
    if row is None:
        return DayAvailability(listing_id=listing_id, date=day, status=AvailabilityStatus.AVAILABLE.value)
    status = row.effective_status(now)
    return DayAvailability(
        listing_id=listing_id,
        date=day,
        status=status,
        price_modifier=row.price_modifier,
        min_stay_nights=row.min_stay_nights,
        max_stay_nights=row.max_stay_nights,
        notes=row.notes,
        reserved_until=row.reserved_until if status == AvailabilityStatus.RESERVED else None,
        stored=True,
    )


def build_views(
    listing_id: str,
    start: date,
    end: date,
    rows: dict[date, AvailabilityDay],
    now: datetime,
) -> list[DayAvailability]:
    return [to_view(listing_id, d, rows.get(d), now) for d in date_range(start, end)]


class AvailabilityQueryService:
    """Read side of the calendar. Never writes, including for expired holds."""

    def __init__(
        self,
        store: AvailabilityStore | None = None,
        clock: Clock | None = None,
        calculator: PriceCalculator | None = None,
    ) -> None:
        self._store = store or AvailabilityStore()
        self._clock = clock or utcnow
        self._calculator = calculator or PriceCalculator()
        self._max_range_days = section("calendar").get("max_range_days", 730)

    def get_range(self, listing_id: str, start: date, end: date) -> list[DayAvailability]:
        """One entry per day in [start, end), in date order."""
        self._validate_window(start, end)
        now = self._clock()
        with self._store.session() as session:
            rows = self._store.load(session, listing_id, start, end)
        return build_views(listing_id, start, end, rows, now)

    def compute_stats(self, listing_id: str, start: date, end: date) -> AvailabilityStats:
        days = self.get_range(listing_id, start, end)
        total = len(days)
        counts = {status.value: 0 for status in AvailabilityStatus}
        for day in days:
            counts[day.status] += 1

        available_modifiers = [d.price_modifier for d in days if d.is_available]
        avg_modifier = (
            sum(available_modifiers) / len(available_modifiers) if available_modifiers else 1.0
        )
        booked = counts[AvailabilityStatus.BOOKED.value]
        return AvailabilityStats(
            total_days=total,
            available=counts[AvailabilityStatus.AVAILABLE.value],
            booked=booked,
            blocked_or_maintenance=(
                counts[AvailabilityStatus.BLOCKED.value] + counts[AvailabilityStatus.MAINTENANCE.value]
            ),
            reserved=counts[AvailabilityStatus.RESERVED.value],
            occupancy_rate=booked / total if total else 0.0,
            avg_price_modifier=round(avg_modifier, 4),
        )

    def check_availability(
        self,
        listing_id: str,
        check_in: date,
        check_out: date,
        base_price: Decimal | float | None = None,
    ) -> AvailabilityCheck:
        """Whether a stay could be held right now, with a price quote if priced."""
        days = self.get_range(listing_id, check_in, check_out)
        nights = nights_between(check_in, check_out)
        unavailable = [d.date for d in days if not d.is_available]

        meets_rules = True
        try:
            self._calculator.check_stay_length(nights, days)
        except ValidationError:
            meets_rules = False

        quote = self._calculator.quote(base_price, days) if base_price is not None else None
        return AvailabilityCheck(
            listing_id=listing_id,
            check_in=check_in,
            check_out=check_out,
            total_nights=nights,
            is_available=not unavailable and meets_rules,
            unavailable_dates=unavailable,
            min_stay_nights=self._calculator.required_min_stay(days),
            max_stay_nights=self._calculator.allowed_max_stay(days),
            meets_stay_rules=meets_rules,
            quote=quote,
        )

    def _validate_window(self, start: date, end: date) -> None:
        validate_range(start, end)
        if nights_between(start, end) > self._max_range_days:
            raise ValidationError(f"Date window is limited to {self._max_range_days} days")

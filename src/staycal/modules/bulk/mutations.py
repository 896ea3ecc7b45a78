"""Host-initiated batch writes to a listing's calendar."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Iterable, Sequence

from staycal.config import section
from staycal.dates import Clock, add_months, date_range, utcnow
from staycal.errors import ValidationError
from staycal.events import Event, EventBus, EventType, event_bus
from staycal.models.availability import AvailabilityStatus
from staycal.modules.availability.query import AvailabilityQueryService, DayAvailability
from staycal.modules.availability.store import AvailabilityStore

logger = logging.getLogger(__name__)

HOST_STATUSES = {
    AvailabilityStatus.AVAILABLE.value,
    AvailabilityStatus.BLOCKED.value,
    AvailabilityStatus.MAINTENANCE.value,
    AvailabilityStatus.BOOKED.value,
}
WEEKEND_DAYS = (4, 5)  # Friday, Saturday


@dataclass
class DayUpdate:
    date: date
    status: str
    price_modifier: float | None = None
    min_stay_nights: int | None = None
    max_stay_nights: int | None = None
    notes: str | None = None  # "" clears existing notes
    # Evaluated under the listing lock against the stored row.
    expected_status: str | None = None
    price_factor: float | None = None
    price_cap: float | None = None


@dataclass
class BulkResult:
    listing_id: str
    updated: list[date] = field(default_factory=list)
    skipped: list[date] = field(default_factory=list)


# --- date-set computations ---


def weekend_dates(start: date, end: date, weekdays: Sequence[int] = WEEKEND_DAYS) -> list[date]:
    """Every Friday and Saturday in [start, end]."""
    return [d for d in date_range(start, end + timedelta(days=1)) if d.weekday() in weekdays]


def dates_with_status(days: Iterable[DayAvailability], status: str) -> list[date]:
    return [d.date for d in days if d.status == status]


def boosted_modifier(current: float, factor: float, cap: float) -> float:
    return round(min(current * factor, cap), 4)


def boost_updates(days: Iterable[DayAvailability], factor: float, cap: float, notes: str | None = None) -> list[DayUpdate]:
    """Raise the modifier on available days, never above ``cap``.

    The boosted value is computed from the stored modifier when the update is
    applied, and a day that is no longer available by then is skipped.
    """
    return [
        DayUpdate(
            date=d.date,
            status=AvailabilityStatus.AVAILABLE.value,
            notes=notes,
            expected_status=AvailabilityStatus.AVAILABLE.value,
            price_factor=factor,
            price_cap=cap,
        )
        for d in days
        if d.is_available
    ]


class BulkMutationService:
    """Upserts host changes while protecting booked and held days.

    A day that is currently booked is skipped unless the target status is
    ``booked`` itself, and a day under an active hold is always skipped, so a
    host edit can never undo a guest's reservation.
    """

    def __init__(
        self,
        store: AvailabilityStore | None = None,
        clock: Clock | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._store = store or AvailabilityStore()
        self._clock = clock or utcnow
        self._bus = bus or event_bus
        self._query = AvailabilityQueryService(store=self._store, clock=self._clock)
        self._config = section("bulk")

    def apply_range(
        self,
        listing_id: str,
        dates: Iterable[date],
        status: str,
        price_modifier: float | None = None,
        min_stay_nights: int | None = None,
        notes: str | None = None,
        max_stay_nights: int | None = None,
    ) -> BulkResult:
        """Set the same values on an explicit list of dates."""
        updates = [
            DayUpdate(
                date=d,
                status=status,
                price_modifier=price_modifier,
                min_stay_nights=min_stay_nights,
                max_stay_nights=max_stay_nights,
                notes=notes,
            )
            for d in sorted(set(dates))
        ]
        return self.apply_updates(listing_id, updates)

    def apply_updates(self, listing_id: str, updates: Sequence[DayUpdate]) -> BulkResult:
        """Apply per-day updates in one guarded transaction."""
        for update in updates:
            self._validate(update)
        result = BulkResult(listing_id=listing_id)
        if not updates:
            return result

        with self._store.transaction(listing_id) as session:
            now = self._clock()
            rows = self._store.load_dates(session, listing_id, [u.date for u in updates], for_update=True)
            for update in updates:
                row = rows.get(update.date)
                current = row.effective_status(now) if row else AvailabilityStatus.AVAILABLE.value
                if current == AvailabilityStatus.RESERVED or (
                    current == AvailabilityStatus.BOOKED and update.status != AvailabilityStatus.BOOKED
                ):
                    result.skipped.append(update.date)
                    continue
                if update.expected_status is not None and current != update.expected_status:
                    result.skipped.append(update.date)
                    continue

                row = self._store.get_or_create(session, listing_id, update.date, rows)
                row.status = update.status
                row.clear_reservation()
                if update.status != AvailabilityStatus.BOOKED:
                    row.booking_id = None
                if update.price_factor is not None:
                    cap = update.price_cap if update.price_cap is not None else float("inf")
                    row.price_modifier = boosted_modifier(row.price_modifier or 1.0, update.price_factor, cap)
                elif update.price_modifier is not None:
                    row.price_modifier = update.price_modifier
                if update.min_stay_nights is not None:
                    row.min_stay_nights = update.min_stay_nights
                if update.max_stay_nights is not None:
                    row.max_stay_nights = update.max_stay_nights
                if update.notes is not None:
                    row.notes = update.notes or None
                result.updated.append(update.date)

        if result.skipped:
            logger.warning(
                "Skipped %d protected or changed days on listing %s", len(result.skipped), listing_id
            )
        logger.info("Bulk update on listing %s: %d days updated", listing_id, len(result.updated))
        if result.updated:
            self._bus.publish(Event(
                event_type=EventType.AVAILABILITY_UPDATED,
                data={
                    "listing_id": listing_id,
                    "dates": [d.isoformat() for d in result.updated],
                    "skipped": [d.isoformat() for d in result.skipped],
                },
            ))
        return result

    @staticmethod
    def _validate(update: DayUpdate) -> None:
        if update.status not in HOST_STATUSES:
            raise ValidationError(f"Status {update.status!r} cannot be set by a host")
        if update.price_modifier is not None and update.price_modifier <= 0:
            raise ValidationError(f"Price modifier must be positive, got {update.price_modifier}")
        if update.min_stay_nights is not None and update.min_stay_nights < 1:
            raise ValidationError(f"Minimum stay must be at least 1 night, got {update.min_stay_nights}")
        if update.max_stay_nights is not None and update.max_stay_nights < 1:
            raise ValidationError(f"Maximum stay must be at least 1 night, got {update.max_stay_nights}")
        if update.price_factor is not None and update.price_factor <= 0:
            raise ValidationError(f"Price factor must be positive, got {update.price_factor}")
        if update.price_cap is not None and update.price_cap <= 0:
            raise ValidationError(f"Price cap must be positive, got {update.price_cap}")

    # --- quick actions ---

    def _window(self, start: date | None, end: date | None) -> tuple[date, date]:
        start = start or self._clock().date()
        end = end or add_months(start, self._config.get("quick_action_months", 3))
        return start, end

    def block_weekends(self, listing_id: str, start: date | None = None, end: date | None = None) -> BulkResult:
        """Block every Friday and Saturday in the window (default: next 3 months)."""
        start, end = self._window(start, end)
        return self.apply_range(
            listing_id,
            weekend_dates(start, end),
            AvailabilityStatus.BLOCKED.value,
            notes="Blocked weekends - bulk action",
        )

    def unblock_all(self, listing_id: str, start: date | None = None, end: date | None = None) -> BulkResult:
        """Reopen every blocked day in the window."""
        start, end = self._window(start, end)
        days = self._query.get_range(listing_id, start, end + timedelta(days=1))
        return self.apply_updates(
            listing_id,
            [
                DayUpdate(
                    date=d,
                    status=AvailabilityStatus.AVAILABLE.value,
                    notes="",
                    expected_status=AvailabilityStatus.BLOCKED.value,
                )
                for d in dates_with_status(days, AvailabilityStatus.BLOCKED.value)
            ],
        )

    def boost_pricing(
        self,
        listing_id: str,
        start: date | None = None,
        end: date | None = None,
        factor: float | None = None,
        cap: float | None = None,
    ) -> BulkResult:
        """Raise available days' modifiers by ``factor`` (default 20%), capped at 2x."""
        factor = factor if factor is not None else self._config.get("boost_factor", 1.2)
        cap = cap if cap is not None else self._config.get("boost_cap", 2.0)
        if factor <= 0 or cap <= 0:
            raise ValidationError("Boost factor and cap must be positive")
        start, end = self._window(start, end)
        days = self._query.get_range(listing_id, start, end + timedelta(days=1))
        return self.apply_updates(
            listing_id,
            boost_updates(days, factor, cap, notes="Price boosted - bulk action"),
        )

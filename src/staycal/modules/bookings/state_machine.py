"""Booking lifecycle: pending -> confirmed -> completed, with cancellation."""

from __future__ import annotations

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from staycal.dates import Clock, nights_between, utcnow, validate_range
from staycal.errors import (
    ConflictError,
    HoldExpiredError,
    InvalidTransitionError,
    NotFoundError,
    PaymentFailure,
    PaymentUnavailable,
    ValidationError,
)
from staycal.events import Event, EventBus, EventType, event_bus
from staycal.models.booking import Booking, BookingStatus, PaymentMethod
from staycal.models.hold import ReservationHold
from staycal.modules.availability.query import AvailabilityQueryService, build_views
from staycal.modules.availability.store import AvailabilityStore
from staycal.modules.bookings.collaborators import PaymentProcessor
from staycal.modules.holds.manager import ReservationHoldManager
from staycal.modules.listings.catalog import ListingCatalog, ListingInfo, SqlListingCatalog
from staycal.modules.pricing.calculator import PriceCalculator

logger = logging.getLogger(__name__)

BOOKING_TRANSITIONS: dict[str, set[str]] = {
    BookingStatus.PENDING.value: {BookingStatus.CONFIRMED.value, BookingStatus.CANCELLED.value},
    BookingStatus.CONFIRMED.value: {BookingStatus.COMPLETED.value, BookingStatus.CANCELLED.value},
    BookingStatus.COMPLETED.value: set(),
    BookingStatus.CANCELLED.value: set(),
}


def assert_booking_transition(current: str, target: str) -> None:
    allowed = BOOKING_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise InvalidTransitionError(current, target)


class BookingStateMachine:
    """Drives bookings through their states and keeps the calendar in step.

    Card bookings start ``pending`` and are confirmed only once payment has
    succeeded and their hold has been converted to booked days, both inside the
    same listing transaction. Cash bookings claim their days and start
    ``confirmed`` in a single transaction; a conflict leaves no booking behind.
    """

    def __init__(
        self,
        holds: ReservationHoldManager | None = None,
        catalog: ListingCatalog | None = None,
        payments: PaymentProcessor | None = None,
        store: AvailabilityStore | None = None,
        clock: Clock | None = None,
        bus: EventBus | None = None,
        calculator: PriceCalculator | None = None,
    ) -> None:
        self._store = store or AvailabilityStore()
        self._clock = clock or utcnow
        self._bus = bus or event_bus
        self._catalog = catalog or SqlListingCatalog()
        self._calculator = calculator or PriceCalculator()
        self._holds = holds or ReservationHoldManager(
            store=self._store,
            catalog=self._catalog,
            clock=self._clock,
            bus=self._bus,
            calculator=self._calculator,
        )
        self._query = AvailabilityQueryService(store=self._store, clock=self._clock, calculator=self._calculator)
        self._payments = payments

    # --- creation ---

    def create_booking(
        self,
        listing_id: str,
        guest_id: str,
        check_in: date,
        check_out: date,
        payment_method: str,
        *,
        num_guests: int = 1,
        special_requests: str | None = None,
        hold_id: str | None = None,
    ) -> Booking:
        """Create a booking: ``pending`` for card, ``confirmed`` for cash."""
        validate_range(check_in, check_out)
        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            raise ValidationError(f"Unsupported payment method {payment_method!r}") from None
        if not guest_id:
            raise ValidationError("A guest id is required")

        listing = self._catalog.get_listing(listing_id)
        if listing is None:
            raise NotFoundError(f"Listing {listing_id} not found")
        if num_guests < 1 or num_guests > listing.max_guests:
            raise ValidationError(f"Listing {listing_id} accepts 1 to {listing.max_guests} guests")

        booking = Booking(
            id=str(uuid.uuid4()),
            listing_id=listing_id,
            guest_id=guest_id,
            check_in_date=check_in,
            check_out_date=check_out,
            total_nights=nights_between(check_in, check_out),
            num_guests=num_guests,
            payment_method=method.value,
            special_requests=special_requests,
            hold_id=hold_id,
        )
        if method == PaymentMethod.CASH:
            self._create_cash(booking, listing)
        else:
            self._create_card(booking, listing)

        logger.info(
            "Booking %s created for listing %s (%s, %s, %s nights, %s)",
            booking.id, listing_id, method.value, booking.status, booking.total_nights, booking.total_amount,
        )
        self._publish(EventType.BOOKING_CREATED, booking)
        if booking.status == BookingStatus.CONFIRMED:
            self._publish(EventType.BOOKING_CONFIRMED, booking)
        return booking

    def _create_card(self, booking: Booking, listing: ListingInfo) -> None:
        hold = None
        if booking.hold_id:
            hold = self._holds.get_hold(booking.hold_id)
            self._check_hold(hold, booking)

        days = self._query.get_range(booking.listing_id, booking.check_in_date, booking.check_out_date)
        self._calculator.check_stay_length(booking.total_nights, days)
        if hold is None:
            taken = next((d for d in days if not d.is_available), None)
            if taken is not None:
                raise ConflictError(booking.listing_id, taken.date, taken.status)

        booking.total_amount = self._price(listing, days, hold)
        booking.status = BookingStatus.PENDING.value
        with self._store.transaction(booking.listing_id) as session:
            if booking.hold_id:
                # Re-checked under the lock so two bookings cannot bind one hold.
                self._check_hold(session.get(ReservationHold, booking.hold_id, with_for_update=True), booking)
                self._assert_hold_unclaimed(session, booking)
            session.add(booking)

    def _create_cash(self, booking: Booking, listing: ListingInfo) -> None:
        with self._store.transaction(booking.listing_id) as session:
            hold = None
            if booking.hold_id:
                hold = session.get(ReservationHold, booking.hold_id, with_for_update=True)
                self._check_hold(hold, booking)
                self._assert_hold_unclaimed(session, booking)

            rows = self._store.load(session, booking.listing_id, booking.check_in_date, booking.check_out_date)
            days = build_views(booking.listing_id, booking.check_in_date, booking.check_out_date, rows, self._clock())
            self._calculator.check_stay_length(booking.total_nights, days)
            booking.total_amount = self._price(listing, days, hold)

            if hold is not None:
                self._holds.confirm(hold.id, booking.id, holder_id=booking.guest_id, session=session)
            else:
                self._holds.confirm_direct(
                    booking.listing_id, booking.check_in_date, booking.check_out_date, booking.id,
                    session=session,
                )
            booking.status = BookingStatus.CONFIRMED.value
            session.add(booking)

    def _check_hold(self, hold: ReservationHold | None, booking: Booking) -> None:
        if hold is None or not hold.is_active(self._clock()):
            raise HoldExpiredError(booking.hold_id, "expired" if hold else "unknown hold")
        if hold.holder_id != booking.guest_id:
            raise HoldExpiredError(hold.id, "held by another guest")
        if (
            hold.listing_id != booking.listing_id
            or hold.check_in != booking.check_in_date
            or hold.check_out != booking.check_out_date
        ):
            raise ValidationError(f"Booking dates do not match hold {hold.id}")

    def _assert_hold_unclaimed(self, session: Session, booking: Booking) -> None:
        """A hold backs at most one live booking."""
        other = session.scalars(
            select(Booking.id).where(
                Booking.hold_id == booking.hold_id,
                Booking.status != BookingStatus.CANCELLED.value,
                Booking.id != booking.id,
            )
        ).first()
        if other is not None:
            raise ConflictError(
                booking.listing_id,
                message=f"Hold {booking.hold_id} is already used by booking {other}",
            )

    def _price(self, listing: ListingInfo, days, hold: ReservationHold | None) -> Decimal:
        # A hold carries the price quoted when it was taken.
        if hold is not None and hold.quoted_total is not None:
            return hold.quoted_total
        return self._calculator.total_price(listing.base_price_per_night, days)

    # --- payment ---

    def pay(self, booking_id: str, payment_details: dict[str, Any]) -> Booking:
        """Charge a pending card booking and confirm or cancel it on the result."""
        if self._payments is None:
            raise PaymentUnavailable("No payment processor configured")
        booking = self.get_booking(booking_id)
        if booking.payment_method != PaymentMethod.CARD:
            raise ValidationError(f"Booking {booking_id} is not paid by card")
        assert_booking_transition(booking.status, BookingStatus.CONFIRMED.value)

        try:
            result = self._payments.charge(booking.total_amount, payment_details)
        except PaymentFailure as exc:
            self.fail_payment(booking_id, str(exc))
            raise
        if not result.success:
            reason = result.error or "payment declined"
            self.fail_payment(booking_id, reason)
            raise PaymentFailure(reason)
        return self.confirm_payment(booking_id, payment_reference=result.reference)

    def confirm_payment(self, booking_id: str, payment_reference: str | None = None) -> Booking:
        """Payment succeeded: convert the hold to booked days and confirm.

        If the hold lapsed or its days were taken, the hold is released, the
        booking is cancelled and the error is re-raised so the caller can
        restart the reservation flow.
        """
        listing_id = self.get_booking(booking_id).listing_id
        try:
            with self._store.transaction(listing_id) as session:
                booking = self._locked(session, booking_id)
                assert_booking_transition(booking.status, BookingStatus.CONFIRMED.value)
                if booking.hold_id:
                    self._holds.confirm(booking.hold_id, booking.id, holder_id=booking.guest_id, session=session)
                else:
                    self._holds.confirm_direct(
                        booking.listing_id, booking.check_in_date, booking.check_out_date, booking.id,
                        session=session,
                    )
                booking.status = BookingStatus.CONFIRMED.value
                booking.payment_reference = payment_reference
        except HoldExpiredError as exc:
            logger.warning("Booking %s lost its hold after payment: %s", booking_id, exc)
            self._cancel(booking_id, reason="hold_expired")
            raise
        except ConflictError as exc:
            if exc.date is None:
                # Lock timeout or concurrent write: retryable, booking stays pending.
                raise
            logger.warning("Booking %s dates taken before confirmation: %s", booking_id, exc)
            self._cancel(booking_id, reason="dates_unavailable")
            raise

        logger.info("Booking %s confirmed", booking_id)
        self._publish(EventType.BOOKING_CONFIRMED, booking)
        return booking

    def fail_payment(self, booking_id: str, reason: str | None = None) -> Booking:
        """Payment failed: release any held days and cancel the booking.

        Only a pending card booking can fail payment. Anything else raises
        ``ValidationError`` and is left untouched.
        """
        logger.warning("Payment failed for booking %s: %s", booking_id, reason)
        return self._cancel(
            booking_id,
            reason=f"payment_failed: {reason}" if reason else "payment_failed",
            awaiting_payment=True,
        )

    # --- cancellation and completion ---

    def cancel(self, booking_id: str, reason: str | None = None, admin_notes: str | None = None) -> Booking:
        """Cancel a pending or confirmed booking and return its days to the pool."""
        return self._cancel(booking_id, reason=reason or "cancelled", admin_notes=admin_notes)

    def _cancel(
        self,
        booking_id: str,
        reason: str,
        admin_notes: str | None = None,
        awaiting_payment: bool = False,
    ) -> Booking:
        listing_id = self.get_booking(booking_id).listing_id
        with self._store.transaction(listing_id) as session:
            booking = self._locked(session, booking_id)
            if awaiting_payment and (
                booking.payment_method != PaymentMethod.CARD or booking.status != BookingStatus.PENDING
            ):
                raise ValidationError(f"Booking {booking_id} is not a pending card booking")
            assert_booking_transition(booking.status, BookingStatus.CANCELLED.value)
            released = 0
            if booking.hold_id:
                released = self._holds.release_hold(booking.hold_id, session=session)
            freed = self._store.free_booking(session, booking.listing_id, booking.id)
            booking.status = BookingStatus.CANCELLED.value
            booking.cancellation_reason = reason[:200]
            if admin_notes is not None:
                booking.admin_notes = admin_notes

        logger.info(
            "Booking %s cancelled (%s): %d held and %d booked days returned",
            booking_id, reason, released, len(freed),
        )
        self._publish(EventType.BOOKING_CANCELLED, booking, reason=reason)
        return booking

    def complete(self, booking_id: str) -> Booking:
        """Mark a confirmed stay as completed. Called by an external trigger."""
        listing_id = self.get_booking(booking_id).listing_id
        with self._store.transaction(listing_id) as session:
            booking = self._locked(session, booking_id)
            assert_booking_transition(booking.status, BookingStatus.COMPLETED.value)
            booking.status = BookingStatus.COMPLETED.value
        logger.info("Booking %s completed", booking_id)
        self._publish(EventType.BOOKING_COMPLETED, booking)
        return booking

    # --- reads ---

    def get_booking(self, booking_id: str) -> Booking:
        with self._store.session() as session:
            booking = session.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking

    def _locked(self, session: Session, booking_id: str) -> Booking:
        booking = session.get(Booking, booking_id, with_for_update=True)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking

    def _publish(self, event_type: EventType, booking: Booking, **extra: Any) -> None:
        data = {
            "booking_id": booking.id,
            "listing_id": booking.listing_id,
            "guest_id": booking.guest_id,
            "check_in": booking.check_in_date.isoformat(),
            "check_out": booking.check_out_date.isoformat(),
            "total_nights": booking.total_nights,
            "total_amount": str(booking.total_amount),
            "payment_method": booking.payment_method,
            "status": booking.status,
        }
        data.update(extra)
        self._bus.publish(Event(event_type=event_type, data=data))

"""Atomic, time-bounded claims over a listing's date range."""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from staycal.config import section
from staycal.dates import Clock, date_range, nights_between, utcnow, validate_range
from staycal.errors import ConflictError, HoldExpiredError, NotFoundError, ValidationError
from staycal.events import Event, EventBus, EventType, event_bus
from staycal.models.availability import AvailabilityDay, AvailabilityStatus
from staycal.models.hold import HoldStatus, ReservationHold
from staycal.modules.availability.query import build_views
from staycal.modules.availability.store import AvailabilityStore
from staycal.modules.listings.catalog import ListingCatalog
from staycal.modules.pricing.calculator import PriceCalculator

logger = logging.getLogger(__name__)


class ReservationHoldManager:
    """Claims, releases, confirms and expires holds.

    A hold is two things kept in step inside one listing transaction: a
    ``ReservationHold`` row and the ``reserved`` status (with ``hold_id``,
    ``reserved_by`` and ``reserved_until``) on each of its days. Expiry is lazy:
    a reserved day whose ``reserved_until`` has passed is available to every
    reader and writer whether or not ``sweep_expired`` has reverted it yet.

    Methods that change state take an optional ``session``. When given, the
    caller already holds ``AvailabilityStore.transaction`` for the listing and
    owns the commit; no events are published in that case.
    """

    def __init__(
        self,
        store: AvailabilityStore | None = None,
        catalog: ListingCatalog | None = None,
        clock: Clock | None = None,
        bus: EventBus | None = None,
        calculator: PriceCalculator | None = None,
    ) -> None:
        self._store = store or AvailabilityStore()
        self._catalog = catalog
        self._clock = clock or utcnow
        self._bus = bus or event_bus
        self._calculator = calculator or PriceCalculator()
        cfg = section("holds")
        self.default_ttl_minutes: float = cfg.get("default_ttl_minutes", 15)
        self.max_ttl_minutes: float = cfg.get("max_ttl_minutes", 60)
        self._sweep_batch_size: int = section("scheduler").get("sweep_batch_size", 500)

    # --- reserve ---

    def reserve(
        self,
        listing_id: str,
        check_in: date,
        check_out: date,
        holder_id: str,
        ttl_minutes: float | None = None,
    ) -> str:
        """Hold every night in [check_in, check_out) or none of them.

        Returns the new hold id. Raises ``ConflictError`` naming the first date
        that is not available, ``ValidationError`` for bad input or stay rules.
        """
        validate_range(check_in, check_out)
        if not holder_id:
            raise ValidationError("A holder id is required to reserve dates")
        ttl = self._resolve_ttl(ttl_minutes)

        listing = None
        if self._catalog is not None:
            listing = self._catalog.get_listing(listing_id)
            if listing is None:
                raise NotFoundError(f"Listing {listing_id} not found")

        with self._store.transaction(listing_id) as session:
            # Read the clock only once the listing lock is held.
            now = self._clock()
            rows = self._claim(session, listing_id, check_in, check_out, now)
            views = build_views(listing_id, check_in, check_out, rows, now)
            self._calculator.check_stay_length(nights_between(check_in, check_out), views)

            hold = ReservationHold(
                id=str(uuid.uuid4()),
                listing_id=listing_id,
                check_in=check_in,
                check_out=check_out,
                holder_id=holder_id,
                status=HoldStatus.ACTIVE.value,
                created_at=now,
                expires_at=now + timedelta(minutes=ttl),
            )
            if listing is not None:
                hold.quoted_total = self._calculator.total_price(listing.base_price_per_night, views)
            session.add(hold)

            for day in date_range(check_in, check_out):
                row = self._store.get_or_create(session, listing_id, day, rows)
                row.status = AvailabilityStatus.RESERVED.value
                row.hold_id = hold.id
                row.reserved_by = holder_id
                row.reserved_until = hold.expires_at
                row.booking_id = None

        logger.info(
            "Hold %s on listing %s for %s..%s by %s until %s",
            hold.id, listing_id, check_in, check_out, holder_id, hold.expires_at,
        )
        self._bus.publish(Event(
            event_type=EventType.HOLD_CREATED,
            data={
                "hold_id": hold.id,
                "listing_id": listing_id,
                "holder_id": holder_id,
                "check_in": check_in.isoformat(),
                "check_out": check_out.isoformat(),
                "expires_at": hold.expires_at.isoformat(),
            },
        ))
        return hold.id

    def _resolve_ttl(self, ttl_minutes: float | None) -> float:
        ttl = self.default_ttl_minutes if ttl_minutes is None else ttl_minutes
        if ttl <= 0:
            raise ValidationError(f"Hold TTL must be positive, got {ttl}")
        if ttl > self.max_ttl_minutes:
            raise ValidationError(f"Hold TTL is limited to {self.max_ttl_minutes} minutes")
        return ttl

    def _claim(
        self,
        session: Session,
        listing_id: str,
        start: date,
        end: date,
        now: datetime,
    ) -> dict[date, AvailabilityDay]:
        """Lock the range and verify every day is free, oldest date first."""
        rows = self._store.load(session, listing_id, start, end, for_update=True)
        for day in date_range(start, end):
            row = rows.get(day)
            status = row.effective_status(now) if row else AvailabilityStatus.AVAILABLE.value
            if status != AvailabilityStatus.AVAILABLE:
                logger.warning("Conflict on listing %s at %s (%s)", listing_id, day, status)
                raise ConflictError(listing_id, day, status)
        self._retire_lapsed_holds(session, rows, now)
        return rows

    def _retire_lapsed_holds(self, session: Session, rows: dict[date, AvailabilityDay], now: datetime) -> None:
        """Expire lapsed holds whose days are about to be overwritten.

        All of a retired hold's reserved days are reverted, including those
        outside the range being claimed, since the sweep only visits active holds.
        """
        lapsed = {
            (row.listing_id, row.hold_id)
            for row in rows.values()
            if row.status == AvailabilityStatus.RESERVED and row.hold_id and not row.is_held(now)
        }
        for listing_id, hold_id in lapsed:
            self._store.free_hold(session, listing_id, hold_id)
            hold = session.get(ReservationHold, hold_id)
            if hold is not None and hold.status == HoldStatus.ACTIVE:
                hold.status = HoldStatus.EXPIRED.value
                hold.closed_at = now

    # --- release ---

    def release(
        self,
        listing_id: str,
        check_in: date,
        check_out: date,
        holder_id: str,
        *,
        session: Session | None = None,
    ) -> int:
        """Give back the holder's reserved days in range. Never fails on a missing hold."""
        validate_range(check_in, check_out)
        if session is not None:
            return len(self._release(session, listing_id, check_in, check_out, holder_id, self._clock()))

        with self._store.transaction(listing_id) as session:
            freed = self._release(session, listing_id, check_in, check_out, holder_id, self._clock())
        if freed:
            logger.info("Released %d days on listing %s held by %s", len(freed), listing_id, holder_id)
            self._bus.publish(Event(
                event_type=EventType.HOLD_RELEASED,
                data={
                    "listing_id": listing_id,
                    "holder_id": holder_id,
                    "dates": [d.isoformat() for d in freed],
                },
            ))
        return len(freed)

    def _release(
        self,
        session: Session,
        listing_id: str,
        check_in: date,
        check_out: date,
        holder_id: str,
        now: datetime,
    ) -> list[date]:
        rows = self._store.load(session, listing_id, check_in, check_out, for_update=True)
        freed = []
        for row in rows.values():
            if row.status == AvailabilityStatus.RESERVED and row.reserved_by == holder_id:
                row.status = AvailabilityStatus.AVAILABLE.value
                row.clear_reservation()
                freed.append(row.date)

        # Only holds entirely inside the released range are closed.
        holds = session.scalars(
            select(ReservationHold).where(
                ReservationHold.listing_id == listing_id,
                ReservationHold.holder_id == holder_id,
                ReservationHold.status == HoldStatus.ACTIVE.value,
                ReservationHold.check_in >= check_in,
                ReservationHold.check_out <= check_out,
            )
        ).all()
        for hold in holds:
            hold.status = HoldStatus.RELEASED.value
            hold.closed_at = now
        return freed

    def release_hold(
        self,
        hold_id: str,
        holder_id: str | None = None,
        *,
        session: Session | None = None,
    ) -> int:
        """Release one hold by id; a no-op for unknown, closed or foreign holds."""
        if session is not None:
            return len(self._release_hold(session, hold_id, holder_id, self._clock()))

        listing_id = self._listing_of(hold_id)
        if listing_id is None:
            return 0
        with self._store.transaction(listing_id) as session:
            freed = self._release_hold(session, hold_id, holder_id, self._clock())
        if freed:
            logger.info("Released hold %s (%d days)", hold_id, len(freed))
            self._bus.publish(Event(
                event_type=EventType.HOLD_RELEASED,
                data={"hold_id": hold_id, "listing_id": listing_id, "dates": [d.isoformat() for d in freed]},
            ))
        return len(freed)

    def _release_hold(self, session: Session, hold_id: str, holder_id: str | None, now: datetime) -> list[date]:
        hold = session.get(ReservationHold, hold_id, with_for_update=True)
        if hold is None:
            return []
        if holder_id is not None and hold.holder_id != holder_id:
            return []
        freed = self._store.free_hold(session, hold.listing_id, hold.id)
        if hold.status == HoldStatus.ACTIVE:
            hold.status = HoldStatus.RELEASED.value
            hold.closed_at = now
        return freed

    # --- confirm ---

    def confirm(
        self,
        hold_id: str,
        booking_id: str,
        *,
        holder_id: str | None = None,
        session: Session | None = None,
    ) -> ReservationHold:
        """Turn a still-active hold into booked days linked to ``booking_id``.

        Raises ``HoldExpiredError`` when the hold is unknown, closed, lapsed or
        owned by a different holder. A lapsed hold's days are reverted to
        available before the error propagates. Expiry is judged by the clock
        read after the listing lock is acquired, never before waiting for it.
        """
        if session is not None:
            return self._confirm(session, hold_id, booking_id, holder_id, self._clock())

        listing_id = self._listing_of(hold_id)
        if listing_id is None:
            raise HoldExpiredError(hold_id, "unknown hold")
        try:
            with self._store.transaction(listing_id) as session:
                hold = self._confirm(session, hold_id, booking_id, holder_id, self._clock())
        except HoldExpiredError:
            self.expire_hold(hold_id)
            raise
        logger.info("Hold %s confirmed as booking %s", hold_id, booking_id)
        return hold

    def _confirm(
        self,
        session: Session,
        hold_id: str,
        booking_id: str,
        holder_id: str | None,
        now: datetime,
    ) -> ReservationHold:
        hold = session.get(ReservationHold, hold_id, with_for_update=True)
        if hold is None:
            raise HoldExpiredError(hold_id, "unknown hold")
        if hold.status == HoldStatus.CONFIRMED and hold.booking_id == booking_id:
            return hold
        if hold.status != HoldStatus.ACTIVE:
            raise HoldExpiredError(hold_id, hold.status)
        if now >= hold.expires_at:
            raise HoldExpiredError(hold_id, "expired")
        if holder_id is not None and hold.holder_id != holder_id:
            raise HoldExpiredError(hold_id, "held by another guest")

        rows = self._store.load(session, hold.listing_id, hold.check_in, hold.check_out, for_update=True)
        for day in date_range(hold.check_in, hold.check_out):
            row = rows.get(day)
            if row is None or row.hold_id != hold.id or row.status != AvailabilityStatus.RESERVED:
                status = row.effective_status(now) if row else AvailabilityStatus.AVAILABLE.value
                raise ConflictError(hold.listing_id, day, status)
        for row in rows.values():
            row.status = AvailabilityStatus.BOOKED.value
            row.booking_id = booking_id
            row.clear_reservation()

        hold.status = HoldStatus.CONFIRMED.value
        hold.booking_id = booking_id
        hold.closed_at = now
        return hold

    def confirm_direct(
        self,
        listing_id: str,
        check_in: date,
        check_out: date,
        booking_id: str,
        *,
        session: Session | None = None,
    ) -> list[date]:
        """Claim available days straight into ``booked`` with no hold phase."""
        validate_range(check_in, check_out)
        if session is not None:
            return self._book(session, listing_id, check_in, check_out, booking_id, self._clock())

        with self._store.transaction(listing_id) as session:
            booked = self._book(session, listing_id, check_in, check_out, booking_id, self._clock())
        logger.info("Booked %d days on listing %s for booking %s", len(booked), listing_id, booking_id)
        return booked

    def _book(
        self,
        session: Session,
        listing_id: str,
        check_in: date,
        check_out: date,
        booking_id: str,
        now: datetime,
    ) -> list[date]:
        rows = self._claim(session, listing_id, check_in, check_out, now)
        booked = []
        for day in date_range(check_in, check_out):
            row = self._store.get_or_create(session, listing_id, day, rows)
            row.status = AvailabilityStatus.BOOKED.value
            row.booking_id = booking_id
            row.clear_reservation()
            booked.append(day)
        return booked

    # --- expiry ---

    def expire_hold(self, hold_id: str, now: datetime | None = None) -> list[date]:
        """Physically revert a lapsed hold. Active, unexpired holds are left alone."""
        listing_id = self._listing_of(hold_id)
        if listing_id is None:
            return []
        closed = False
        with self._store.transaction(listing_id) as session:
            now = now or self._clock()
            hold = session.get(ReservationHold, hold_id, with_for_update=True)
            if hold is None or hold.is_active(now):
                return []
            freed = self._store.free_hold(session, listing_id, hold.id)
            if hold.status == HoldStatus.ACTIVE:
                hold.status = HoldStatus.EXPIRED.value
                hold.closed_at = now
                closed = True

        if closed:
            logger.info("Hold %s expired, %d days returned", hold_id, len(freed))
            self._bus.publish(Event(
                event_type=EventType.HOLD_EXPIRED,
                data={"hold_id": hold_id, "listing_id": listing_id, "dates": [d.isoformat() for d in freed]},
            ))
        return freed

    def sweep_expired(self, now: datetime | None = None, limit: int | None = None) -> int:
        """Revert lapsed holds in bulk. Optional housekeeping, safe to run anytime."""
        now = now or self._clock()
        limit = limit or self._sweep_batch_size
        with self._store.session() as session:
            hold_ids = session.scalars(
                select(ReservationHold.id)
                .where(
                    ReservationHold.status == HoldStatus.ACTIVE.value,
                    ReservationHold.expires_at <= now,
                )
                .order_by(ReservationHold.expires_at)
                .limit(limit)
            ).all()

        expired = 0
        for hold_id in hold_ids:
            try:
                self.expire_hold(hold_id, now=now)
                expired += 1
            except ConflictError:
                logger.warning("Listing busy, hold %s left for the next sweep", hold_id)
        if expired:
            logger.info("Expiry sweep reverted %d holds", expired)
        return expired

    # --- reads ---

    def get_hold(self, hold_id: str) -> ReservationHold | None:
        with self._store.session() as session:
            return session.get(ReservationHold, hold_id)

    def active_holds(self, listing_id: str) -> list[ReservationHold]:
        now = self._clock()
        with self._store.session() as session:
            return list(session.scalars(
                select(ReservationHold)
                .where(
                    ReservationHold.listing_id == listing_id,
                    ReservationHold.status == HoldStatus.ACTIVE.value,
                    ReservationHold.expires_at > now,
                )
                .order_by(ReservationHold.check_in)
            ))

    def _listing_of(self, hold_id: str) -> str | None:
        with self._store.session() as session:
            hold = session.get(ReservationHold, hold_id)
            return hold.listing_id if hold else None

"""Durable per-(listing, date) availability storage and listing transactions."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date, timedelta
from typing import Callable, Iterable, Iterator

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from staycal.config import section
from staycal.database import get_session
from staycal.dates import date_range
from staycal.errors import ConflictError
from staycal.models.availability import AvailabilityDay, AvailabilityStatus

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


class ListingLocks:
    """Process-wide registry of one re-entrant lock per listing."""

    def __init__(self) -> None:
        self._locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def get(self, listing_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(listing_id)
            if lock is None:
                lock = self._locks[listing_id] = threading.RLock()
            return lock


listing_locks = ListingLocks()


class AvailabilityStore:
    """Reads and writes AvailabilityDay rows.

    Writers go through ``transaction(listing_id)``, which serializes work on one
    listing inside this process and wraps it in a single database transaction.
    Rows are selected ``FOR UPDATE`` so a second process blocks on the same rows,
    and the ``(listing_id, date)`` unique constraint rejects a racing insert of
    a day that did not exist yet. Either way the whole transaction rolls back
    and the caller gets a ``ConflictError``.
    """

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        locks: ListingLocks | None = None,
        lock_timeout: float | None = None,
    ) -> None:
        self._session_factory = session_factory or get_session
        self._locks = locks or listing_locks
        if lock_timeout is None:
            lock_timeout = section("holds").get("lock_timeout_seconds", 10)
        self._lock_timeout = lock_timeout

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Short-lived session for reads."""
        session = self._session_factory()
        try:
            yield session
        finally:
            session.close()

    @contextmanager
    def transaction(self, listing_id: str) -> Iterator[Session]:
        """Exclusive, all-or-nothing unit of work scoped to one listing."""
        lock = self._locks.get(listing_id)
        if not lock.acquire(timeout=self._lock_timeout):
            raise ConflictError(
                listing_id,
                message=f"Calendar for listing {listing_id} is busy, retry shortly",
            )
        try:
            session = self._session_factory()
            try:
                yield session
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                logger.warning("Concurrent write on listing %s rolled back: %s", listing_id, exc.orig)
                raise ConflictError(
                    listing_id,
                    message=f"Calendar for listing {listing_id} changed concurrently, retry",
                ) from exc
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()
        finally:
            lock.release()

    def load(
        self,
        session: Session,
        listing_id: str,
        start: date,
        end: date,
        for_update: bool = False,
    ) -> dict[date, AvailabilityDay]:
        """Stored rows in [start, end) keyed by date."""
        stmt = (
            select(AvailabilityDay)
            .where(
                AvailabilityDay.listing_id == listing_id,
                AvailabilityDay.date >= start,
                AvailabilityDay.date < end,
            )
            .order_by(AvailabilityDay.date)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return {row.date: row for row in session.scalars(stmt)}

    def load_dates(
        self,
        session: Session,
        listing_id: str,
        dates: Iterable[date],
        for_update: bool = False,
    ) -> dict[date, AvailabilityDay]:
        """Stored rows for an explicit, possibly sparse, set of dates."""
        wanted = set(dates)
        if not wanted:
            return {}
        rows = self.load(session, listing_id, min(wanted), max(wanted) + timedelta(days=1), for_update)
        return {d: row for d, row in rows.items() if d in wanted}

    def get_or_create(
        self,
        session: Session,
        listing_id: str,
        day: date,
        rows: dict[date, AvailabilityDay] | None = None,
    ) -> AvailabilityDay:
        """Return the row for ``day``, adding a default one if none is stored."""
        row = rows.get(day) if rows is not None else self._get(session, listing_id, day)
        if row is None:
            row = AvailabilityDay(
                listing_id=listing_id,
                date=day,
                status=AvailabilityStatus.AVAILABLE.value,
                price_modifier=1.0,
                min_stay_nights=1,
            )
            session.add(row)
            if rows is not None:
                rows[day] = row
        return row

    def _get(self, session: Session, listing_id: str, day: date) -> AvailabilityDay | None:
        return session.scalars(
            select(AvailabilityDay).where(
                AvailabilityDay.listing_id == listing_id,
                AvailabilityDay.date == day,
            )
        ).first()

    def free_booking(self, session: Session, listing_id: str, booking_id: str) -> list[date]:
        """Return a cancelled booking's days to the pool."""
        rows = session.scalars(
            select(AvailabilityDay)
            .where(
                AvailabilityDay.listing_id == listing_id,
                AvailabilityDay.booking_id == booking_id,
                AvailabilityDay.status == AvailabilityStatus.BOOKED.value,
            )
            .with_for_update()
        ).all()
        for row in rows:
            row.status = AvailabilityStatus.AVAILABLE.value
            row.booking_id = None
        return sorted(row.date for row in rows)

    def free_hold(
        self,
        session: Session,
        listing_id: str,
        hold_id: str,
        holder_id: str | None = None,
        within: tuple[date, date] | None = None,
    ) -> list[date]:
        """Revert a hold's reserved days to available, optionally limited to a range."""
        stmt = select(AvailabilityDay).where(
            AvailabilityDay.listing_id == listing_id,
            AvailabilityDay.hold_id == hold_id,
            AvailabilityDay.status == AvailabilityStatus.RESERVED.value,
        )
        if holder_id is not None:
            stmt = stmt.where(AvailabilityDay.reserved_by == holder_id)
        if within is not None:
            stmt = stmt.where(AvailabilityDay.date >= within[0], AvailabilityDay.date < within[1])
        rows = session.scalars(stmt.with_for_update()).all()
        for row in rows:
            row.status = AvailabilityStatus.AVAILABLE.value
            row.clear_reservation()
        return sorted(row.date for row in rows)

    def initialize_calendar(self, listing_id: str, start: date, days_ahead: int | None = None) -> int:
        """Materialize default rows for every missing day in the window."""
        if days_ahead is None:
            days_ahead = section("calendar").get("initialize_days_ahead", 365)
        end = start + timedelta(days=days_ahead)
        with self.transaction(listing_id) as session:
            rows = self.load(session, listing_id, start, end, for_update=True)
            created = 0
            for day in date_range(start, end):
                if day not in rows:
                    self.get_or_create(session, listing_id, day, rows)
                    created += 1
        logger.info("Initialized %d calendar days for listing %s", created, listing_id)
        return created

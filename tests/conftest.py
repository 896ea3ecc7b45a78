"""Shared test fixtures."""

from __future__ import annotations

import os
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy.orm import sessionmaker

# Set test environment before importing app modules
os.environ["DATABASE_URL"] = "sqlite://"  # In-memory DB for tests

from staycal.database import create_db_engine, init_db
from staycal.events import EventBus
from staycal.models.availability import AvailabilityDay
from staycal.modules.availability.query import AvailabilityQueryService
from staycal.modules.availability.store import AvailabilityStore, ListingLocks
from staycal.modules.bookings.collaborators import PaymentResult
from staycal.modules.bookings.state_machine import BookingStateMachine
from staycal.modules.bulk.mutations import BulkMutationService
from staycal.modules.holds.manager import ReservationHoldManager
from staycal.modules.listings.catalog import SqlListingCatalog

LOFT = "loft"  # $100/night, up to 4 guests
STUDIO = "studio"  # $50/night, up to 2 guests

TEST_LISTINGS = [
    {"id": LOFT, "name": "Test Loft", "base_price_per_night": 100.0, "max_guests": 4},
    {"id": STUDIO, "name": "Test Studio", "base_price_per_night": 50.0, "max_guests": 2},
]


class FakeClock:
    """Controllable naive-UTC clock. 1 Mar 2026 is a Sunday."""

    def __init__(self, now: datetime = datetime(2026, 3, 1, 12, 0, 0)) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakePaymentProcessor:
    def __init__(self) -> None:
        self.result = PaymentResult(success=True, reference="ch_test_1")
        self.error: Exception | None = None
        self.charges: list[tuple[Decimal, dict]] = []

    def charge(self, amount: Decimal, payment_details: dict[str, Any]) -> PaymentResult:
        self.charges.append((amount, payment_details))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def db_engine(tmp_path):
    """File-backed SQLite so separate sessions and threads share one database."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def event_bus():
    """Create a fresh event bus for each test."""
    return EventBus()


@pytest.fixture
def published(event_bus):
    """Every event published on the test bus, in order."""
    events = []
    original = event_bus.publish

    def record(event):
        events.append(event)
        original(event)

    event_bus.publish = record
    return events


@pytest.fixture
def catalog(session_factory) -> SqlListingCatalog:
    catalog = SqlListingCatalog(session_factory=session_factory)
    catalog.seed_from_config(TEST_LISTINGS)
    return catalog


@pytest.fixture
def store(session_factory) -> AvailabilityStore:
    return AvailabilityStore(session_factory=session_factory, locks=ListingLocks())


@pytest.fixture
def query(store, clock) -> AvailabilityQueryService:
    return AvailabilityQueryService(store=store, clock=clock)


@pytest.fixture
def holds(store, catalog, clock, event_bus) -> ReservationHoldManager:
    return ReservationHoldManager(store=store, catalog=catalog, clock=clock, bus=event_bus)


@pytest.fixture
def payments() -> FakePaymentProcessor:
    return FakePaymentProcessor()


@pytest.fixture
def bookings(holds, catalog, payments, store, clock, event_bus) -> BookingStateMachine:
    return BookingStateMachine(
        holds=holds, catalog=catalog, payments=payments, store=store, clock=clock, bus=event_bus,
    )


@pytest.fixture
def bulk(store, clock, event_bus) -> BulkMutationService:
    return BulkMutationService(store=store, clock=clock, bus=event_bus)


@pytest.fixture
def seed_days(store):
    """Write calendar rows directly: ``seed_days(LOFT, {date: {"status": ...}})``."""

    def _seed(listing_id: str, days: dict[date, dict[str, Any]]) -> None:
        with store.transaction(listing_id) as session:
            rows = store.load_dates(session, listing_id, days)
            for day, fields in days.items():
                row = store.get_or_create(session, listing_id, day, rows)
                for name, value in fields.items():
                    setattr(row, name, value)

    return _seed


@pytest.fixture
def stored_day(session_factory):
    """Read one stored row back, bypassing lazy expiry."""

    def _get(listing_id: str, day: date) -> AvailabilityDay | None:
        session = session_factory()
        try:
            return (
                session.query(AvailabilityDay)
                .filter(AvailabilityDay.listing_id == listing_id, AvailabilityDay.date == day)
                .first()
            )
        finally:
            session.close()

    return _get

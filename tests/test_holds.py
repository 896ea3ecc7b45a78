"""Tests for reservation holds."""

import threading
import time
from datetime import date, timedelta
from decimal import Decimal

import pytest

from staycal.errors import ConflictError, HoldExpiredError, NotFoundError, ValidationError
from staycal.events import EventType
from staycal.modules.availability.store import AvailabilityStore, ListingLocks
from staycal.modules.holds.manager import ReservationHoldManager

from conftest import LOFT, STUDIO

D = date(2026, 3, 10)


def _statuses(query, listing_id, start, end):
    return [d.status for d in query.get_range(listing_id, start, end)]


def test_reserve_marks_every_night(holds, query, stored_day):
    hold_id = holds.reserve(LOFT, D, D + timedelta(days=3), "guest-1")

    assert _statuses(query, LOFT, D, D + timedelta(days=3)) == ["reserved"] * 3
    row = stored_day(LOFT, D)
    assert row.hold_id == hold_id
    assert row.reserved_by == "guest-1"
    assert row.reserved_until == holds.get_hold(hold_id).expires_at


def test_reserve_defaults_to_fifteen_minutes(holds, clock):
    hold = holds.get_hold(holds.reserve(LOFT, D, D + timedelta(days=1), "guest-1"))
    assert hold.expires_at - clock() == timedelta(minutes=15)
    assert hold.seconds_remaining(clock()) == 900


def test_reserve_locks_quoted_price(holds, seed_days):
    seed_days(LOFT, {D + timedelta(days=1): {"price_modifier": 1.2}})

    hold = holds.get_hold(holds.reserve(LOFT, D, D + timedelta(days=2), "guest-1"))
    assert hold.quoted_total == Decimal("220.00")


def test_reserve_publishes_event(holds, published):
    hold_id = holds.reserve(LOFT, D, D + timedelta(days=1), "guest-1")

    assert [e.event_type for e in published] == [EventType.HOLD_CREATED]
    assert published[0].data["hold_id"] == hold_id


def test_overlapping_reserve_conflicts_without_partial_writes(holds, query):
    holds.reserve(LOFT, D + timedelta(days=2), D + timedelta(days=4), "guest-1")

    with pytest.raises(ConflictError) as excinfo:
        holds.reserve(LOFT, D, D + timedelta(days=5), "guest-2")

    assert excinfo.value.date == D + timedelta(days=2)
    assert excinfo.value.status == "reserved"
    assert _statuses(query, LOFT, D, D + timedelta(days=5)) == [
        "available", "available", "reserved", "reserved", "available",
    ]


def test_reserve_over_blocked_day_conflicts(holds, query, seed_days):
    seed_days(LOFT, {D + timedelta(days=1): {"status": "blocked"}})

    with pytest.raises(ConflictError) as excinfo:
        holds.reserve(LOFT, D, D + timedelta(days=3), "guest-1")

    assert excinfo.value.date == D + timedelta(days=1)
    assert _statuses(query, LOFT, D, D + timedelta(days=3)) == ["available", "blocked", "available"]


def test_other_listing_unaffected(holds):
    holds.reserve(LOFT, D, D + timedelta(days=2), "guest-1")
    assert holds.reserve(STUDIO, D, D + timedelta(days=2), "guest-2")


def test_reserve_over_lapsed_hold(holds, clock):
    first = holds.reserve(LOFT, D, D + timedelta(days=2), "guest-1")
    clock.advance(minutes=20)

    second = holds.reserve(LOFT, D, D + timedelta(days=2), "guest-2")

    assert second != first
    assert holds.get_hold(first).status == "expired"
    assert holds.get_hold(second).status == "active"


def test_reserve_over_part_of_lapsed_hold_frees_the_rest(holds, clock, stored_day):
    first = holds.reserve(LOFT, D, D + timedelta(days=3), "guest-1")
    clock.advance(minutes=20)

    holds.reserve(LOFT, D + timedelta(days=2), D + timedelta(days=4), "guest-2")

    assert holds.get_hold(first).status == "expired"
    for day in (D, D + timedelta(days=1)):
        row = stored_day(LOFT, day)
        assert row.status == "available"
        assert row.hold_id is None
        assert row.reserved_by is None
    assert stored_day(LOFT, D + timedelta(days=2)).reserved_by == "guest-2"
    assert holds.sweep_expired() == 0


def test_reserve_rejects_bad_input(holds):
    with pytest.raises(ValidationError):
        holds.reserve(LOFT, D, D, "guest-1")
    with pytest.raises(ValidationError):
        holds.reserve(LOFT, D, D + timedelta(days=1), "")
    with pytest.raises(ValidationError):
        holds.reserve(LOFT, D, D + timedelta(days=1), "guest-1", ttl_minutes=0)
    with pytest.raises(ValidationError):
        holds.reserve(LOFT, D, D + timedelta(days=1), "guest-1", ttl_minutes=120)


def test_reserve_unknown_listing(holds):
    with pytest.raises(NotFoundError):
        holds.reserve("no-such-listing", D, D + timedelta(days=1), "guest-1")


def test_reserve_enforces_min_stay(holds, query, seed_days):
    seed_days(LOFT, {D: {"min_stay_nights": 3}})

    with pytest.raises(ValidationError):
        holds.reserve(LOFT, D, D + timedelta(days=2), "guest-1")
    assert _statuses(query, LOFT, D, D + timedelta(days=2)) == ["available", "available"]


def test_release_is_idempotent(holds, query):
    hold_id = holds.reserve(LOFT, D, D + timedelta(days=2), "guest-1")

    assert holds.release(LOFT, D, D + timedelta(days=2), "guest-1") == 2
    assert holds.release(LOFT, D, D + timedelta(days=2), "guest-1") == 0

    assert _statuses(query, LOFT, D, D + timedelta(days=2)) == ["available", "available"]
    assert holds.get_hold(hold_id).status == "released"


def test_release_ignores_other_holders(holds, query):
    holds.reserve(LOFT, D, D + timedelta(days=2), "guest-1")

    assert holds.release(LOFT, D, D + timedelta(days=2), "guest-2") == 0
    assert _statuses(query, LOFT, D, D + timedelta(days=2)) == ["reserved", "reserved"]


def test_release_without_hold_is_noop(holds):
    assert holds.release(LOFT, D, D + timedelta(days=2), "guest-1") == 0


def test_release_hold_by_id(holds, query, published):
    hold_id = holds.reserve(LOFT, D, D + timedelta(days=2), "guest-1")

    assert holds.release_hold(hold_id, holder_id="guest-2") == 0
    assert holds.release_hold(hold_id) == 2
    assert holds.release_hold(hold_id) == 0
    assert holds.release_hold("missing") == 0

    assert _statuses(query, LOFT, D, D + timedelta(days=2)) == ["available", "available"]
    assert published[-1].event_type == EventType.HOLD_RELEASED


def test_confirm_within_ttl(holds, query, clock, stored_day):
    hold_id = holds.reserve(LOFT, D, D + timedelta(days=2), "guest-1")
    clock.advance(seconds=890)

    hold = holds.confirm(hold_id, "bk-1")

    assert hold.status == "confirmed"
    assert _statuses(query, LOFT, D, D + timedelta(days=2)) == ["booked", "booked"]
    row = stored_day(LOFT, D)
    assert row.booking_id == "bk-1"
    assert row.hold_id is None
    assert row.reserved_until is None


def test_confirm_after_ttl_fails_and_frees_days(holds, query, clock, published):
    hold_id = holds.reserve(LOFT, D, D + timedelta(days=2), "guest-1")
    clock.advance(seconds=901)

    with pytest.raises(HoldExpiredError) as excinfo:
        holds.confirm(hold_id, "bk-1")

    assert excinfo.value.hold_id == hold_id
    assert holds.get_hold(hold_id).status == "expired"
    assert _statuses(query, LOFT, D, D + timedelta(days=2)) == ["available", "available"]
    assert published[-1].event_type == EventType.HOLD_EXPIRED


def test_confirm_exactly_at_expiry_fails(holds, clock):
    hold_id = holds.reserve(LOFT, D, D + timedelta(days=1), "guest-1")
    clock.advance(seconds=900)

    with pytest.raises(HoldExpiredError):
        holds.confirm(hold_id, "bk-1")


def test_confirm_checks_holder(holds):
    hold_id = holds.reserve(LOFT, D, D + timedelta(days=1), "guest-1")

    with pytest.raises(HoldExpiredError):
        holds.confirm(hold_id, "bk-1", holder_id="guest-2")


def test_confirm_released_hold_fails(holds):
    hold_id = holds.reserve(LOFT, D, D + timedelta(days=1), "guest-1")
    holds.release_hold(hold_id)

    with pytest.raises(HoldExpiredError):
        holds.confirm(hold_id, "bk-1")


def test_confirm_unknown_hold_fails(holds):
    with pytest.raises(HoldExpiredError):
        holds.confirm("missing", "bk-1")


def test_confirm_twice_for_same_booking(holds):
    hold_id = holds.reserve(LOFT, D, D + timedelta(days=1), "guest-1")
    holds.confirm(hold_id, "bk-1")

    assert holds.confirm(hold_id, "bk-1").status == "confirmed"
    with pytest.raises(HoldExpiredError):
        holds.confirm(hold_id, "bk-2")


def test_confirm_direct_claims_available_days(holds, query):
    booked = holds.confirm_direct(LOFT, D, D + timedelta(days=2), "bk-1")

    assert booked == [D, D + timedelta(days=1)]
    assert _statuses(query, LOFT, D, D + timedelta(days=2)) == ["booked", "booked"]
    with pytest.raises(ConflictError):
        holds.confirm_direct(LOFT, D + timedelta(days=1), D + timedelta(days=3), "bk-2")


def test_sweep_expired(holds, clock, stored_day, published):
    lapsed = holds.reserve(LOFT, D, D + timedelta(days=2), "guest-1", ttl_minutes=5)
    other = holds.reserve(STUDIO, D, D + timedelta(days=1), "guest-2", ttl_minutes=5)
    active = holds.reserve(LOFT, D + timedelta(days=5), D + timedelta(days=6), "guest-3", ttl_minutes=30)
    clock.advance(minutes=10)

    assert holds.sweep_expired() == 2

    assert holds.get_hold(lapsed).status == "expired"
    assert holds.get_hold(other).status == "expired"
    assert holds.get_hold(active).status == "active"
    assert stored_day(LOFT, D).status == "available"
    assert stored_day(LOFT, D).hold_id is None
    assert stored_day(LOFT, D + timedelta(days=5)).status == "reserved"
    assert sum(1 for e in published if e.event_type == EventType.HOLD_EXPIRED) == 2

    assert holds.sweep_expired() == 0


def test_expire_hold_leaves_active_hold(holds):
    hold_id = holds.reserve(LOFT, D, D + timedelta(days=1), "guest-1")

    assert holds.expire_hold(hold_id) == []
    assert holds.get_hold(hold_id).status == "active"


def test_active_holds(holds, clock):
    holds.reserve(LOFT, D, D + timedelta(days=1), "guest-1", ttl_minutes=5)
    keep = holds.reserve(LOFT, D + timedelta(days=3), D + timedelta(days=4), "guest-2", ttl_minutes=30)
    clock.advance(minutes=10)

    assert [h.id for h in holds.active_holds(LOFT)] == [keep]


def test_confirm_judges_expiry_after_waiting_for_lock(session_factory, catalog, clock, event_bus, stored_day):
    locks = ListingLocks()
    store = AvailabilityStore(session_factory=session_factory, locks=locks)
    manager = ReservationHoldManager(store=store, catalog=catalog, clock=clock, bus=event_bus)
    hold_id = manager.reserve(LOFT, D, D + timedelta(days=1), "guest-1")
    clock.advance(seconds=899)
    acquired = threading.Event()

    def hold_lock_past_expiry():
        with locks.get(LOFT):
            acquired.set()
            time.sleep(0.2)
            clock.advance(seconds=6)

    worker = threading.Thread(target=hold_lock_past_expiry)
    worker.start()
    try:
        assert acquired.wait(5)
        with pytest.raises(HoldExpiredError):
            manager.confirm(hold_id, "bk-1")
    finally:
        worker.join()

    assert manager.get_hold(hold_id).status == "expired"
    row = stored_day(LOFT, D)
    assert row.status == "available"
    assert row.booking_id is None

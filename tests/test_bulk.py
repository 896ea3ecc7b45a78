"""Tests for host bulk edits and quick actions."""

from datetime import date, timedelta

import pytest

from staycal.errors import ValidationError
from staycal.events import EventType
from staycal.modules.bulk.mutations import DayUpdate, boost_updates, boosted_modifier, weekend_dates

from conftest import LOFT

D = date(2026, 3, 10)


def _days(n, start=D):
    return [start + timedelta(days=i) for i in range(n)]


def test_apply_range_blocks_days(bulk, query, published):
    result = bulk.apply_range(LOFT, _days(3), "blocked", notes="Renovation")

    assert result.updated == _days(3)
    assert result.skipped == []
    days = query.get_range(LOFT, D, D + timedelta(days=3))
    assert [d.status for d in days] == ["blocked"] * 3
    assert days[0].notes == "Renovation"
    assert published[-1].event_type == EventType.AVAILABILITY_UPDATED


def test_apply_range_sets_rules(bulk, query):
    bulk.apply_range(LOFT, _days(2), "available", price_modifier=1.5, min_stay_nights=3, max_stay_nights=7)

    day = query.get_range(LOFT, D, D + timedelta(days=1))[0]
    assert day.price_modifier == 1.5
    assert day.min_stay_nights == 3
    assert day.max_stay_nights == 7


def test_blocking_never_overrides_booked_day(bulk, query, seed_days, stored_day):
    seed_days(LOFT, {D + timedelta(days=1): {"status": "booked", "booking_id": "bk-1"}})

    result = bulk.apply_range(LOFT, _days(3), "blocked")

    assert result.skipped == [D + timedelta(days=1)]
    assert [d.status for d in query.get_range(LOFT, D, D + timedelta(days=3))] == [
        "blocked", "booked", "blocked",
    ]
    assert stored_day(LOFT, D + timedelta(days=1)).booking_id == "bk-1"


def test_booked_target_may_rewrite_booked_day(bulk, seed_days, stored_day):
    seed_days(LOFT, {D: {"status": "booked", "booking_id": "bk-1"}})

    result = bulk.apply_range(LOFT, [D], "booked", notes="Early check-in")

    assert result.updated == [D]
    row = stored_day(LOFT, D)
    assert row.booking_id == "bk-1"
    assert row.notes == "Early check-in"


def test_held_days_are_skipped(bulk, holds, query):
    holds.reserve(LOFT, D, D + timedelta(days=1), "guest-1")

    result = bulk.apply_range(LOFT, _days(2), "maintenance")

    assert result.skipped == [D]
    assert [d.status for d in query.get_range(LOFT, D, D + timedelta(days=2))] == ["reserved", "maintenance"]


def test_lapsed_hold_is_overwritten(bulk, holds, clock, stored_day):
    holds.reserve(LOFT, D, D + timedelta(days=1), "guest-1")
    clock.advance(minutes=16)

    result = bulk.apply_range(LOFT, [D], "blocked")

    assert result.updated == [D]
    row = stored_day(LOFT, D)
    assert row.status == "blocked"
    assert row.hold_id is None
    assert row.reserved_until is None


def test_empty_notes_clear_and_none_keeps(bulk, query, seed_days):
    seed_days(LOFT, {D: {"status": "blocked", "notes": "Owner stay"}})

    bulk.apply_range(LOFT, [D], "blocked", price_modifier=1.1)
    assert query.get_range(LOFT, D, D + timedelta(days=1))[0].notes == "Owner stay"

    bulk.apply_range(LOFT, [D], "available", notes="")
    assert query.get_range(LOFT, D, D + timedelta(days=1))[0].notes is None


def test_invalid_updates_rejected_before_any_write(bulk, query):
    with pytest.raises(ValidationError):
        bulk.apply_range(LOFT, _days(2), "reserved")
    with pytest.raises(ValidationError):
        bulk.apply_range(LOFT, _days(2), "blocked", price_modifier=0)
    with pytest.raises(ValidationError):
        bulk.apply_range(LOFT, _days(2), "blocked", min_stay_nights=0)
    with pytest.raises(ValidationError):
        bulk.apply_range(LOFT, _days(2), "closed")

    assert all(not d.stored for d in query.get_range(LOFT, D, D + timedelta(days=2)))


def test_empty_date_list_is_noop(bulk, published):
    result = bulk.apply_range(LOFT, [], "blocked")

    assert result.updated == []
    assert published == []


def test_weekend_dates():
    # 1 Mar 2026 is a Sunday
    assert weekend_dates(date(2026, 3, 1), date(2026, 3, 14)) == [
        date(2026, 3, 6), date(2026, 3, 7), date(2026, 3, 13), date(2026, 3, 14),
    ]


def test_boosted_modifier_is_capped():
    assert boosted_modifier(1.0, 1.2, 2.0) == 1.2
    assert boosted_modifier(1.8, 1.2, 2.0) == 2.0
    assert boosted_modifier(2.0, 1.2, 2.0) == 2.0


def test_block_weekends_covers_three_months(bulk, query, seed_days):
    seed_days(LOFT, {date(2026, 3, 6): {"status": "booked", "booking_id": "bk-1"}})

    result = bulk.block_weekends(LOFT)

    # 1 Mar to 1 Jun 2026 holds 13 full weeks
    assert len(result.updated) + len(result.skipped) == 26
    assert result.skipped == [date(2026, 3, 6)]
    assert all(d.weekday() in (4, 5) for d in result.updated)
    saturday = query.get_range(LOFT, date(2026, 3, 7), date(2026, 3, 8))[0]
    assert saturday.status == "blocked"
    assert saturday.notes == "Blocked weekends - bulk action"


def test_unblock_all_only_reopens_blocked_days(bulk, query, seed_days):
    seed_days(LOFT, {
        D: {"status": "blocked", "notes": "Owner stay"},
        D + timedelta(days=1): {"status": "maintenance"},
        D + timedelta(days=2): {"status": "blocked"},
    })

    result = bulk.unblock_all(LOFT)

    assert result.updated == [D, D + timedelta(days=2)]
    days = query.get_range(LOFT, D, D + timedelta(days=3))
    assert [d.status for d in days] == ["available", "maintenance", "available"]
    assert days[0].notes is None


def test_boost_pricing_touches_available_days_only(bulk, query, seed_days):
    seed_days(LOFT, {
        D: {"price_modifier": 1.8},
        D + timedelta(days=1): {"status": "booked", "booking_id": "bk-1"},
    })

    result = bulk.boost_pricing(LOFT, start=D, end=D + timedelta(days=2))

    assert result.updated == [D, D + timedelta(days=2)]
    days = query.get_range(LOFT, D, D + timedelta(days=3))
    assert [d.price_modifier for d in days] == [2.0, 1.0, 1.2]
    assert days[2].notes == "Price boosted - bulk action"
    assert days[1].status == "booked"


def test_boost_reads_stored_values_at_apply_time(bulk, query, seed_days, stored_day):
    snapshot = query.get_range(LOFT, D, D + timedelta(days=2))
    updates = boost_updates(snapshot, 1.2, 2.0)
    # The host edits the calendar between the snapshot and the write.
    seed_days(LOFT, {
        D: {"price_modifier": 1.5},
        D + timedelta(days=1): {"status": "blocked"},
    })

    result = bulk.apply_updates(LOFT, updates)

    assert result.updated == [D]
    assert result.skipped == [D + timedelta(days=1)]
    assert stored_day(LOFT, D).price_modifier == 1.8
    blocked = stored_day(LOFT, D + timedelta(days=1))
    assert blocked.status == "blocked"
    assert blocked.price_modifier == 1.0


def test_expected_status_mismatch_is_skipped(bulk, seed_days, stored_day):
    seed_days(LOFT, {D: {"status": "maintenance", "notes": "Boiler"}})

    result = bulk.apply_updates(LOFT, [
        DayUpdate(date=D, status="available", notes="", expected_status="blocked"),
    ])

    assert result.updated == []
    assert result.skipped == [D]
    row = stored_day(LOFT, D)
    assert row.status == "maintenance"
    assert row.notes == "Boiler"


def test_price_factor_must_be_positive(bulk):
    with pytest.raises(ValidationError):
        bulk.apply_updates(LOFT, [DayUpdate(date=D, status="available", price_factor=0)])

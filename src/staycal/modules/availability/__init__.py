"""Calendar storage and read side."""

from staycal.modules.availability.query import (
    AvailabilityCheck,
    AvailabilityQueryService,
    AvailabilityStats,
    DayAvailability,
)
from staycal.modules.availability.store import AvailabilityStore, ListingLocks

__all__ = [
    "AvailabilityCheck",
    "AvailabilityQueryService",
    "AvailabilityStats",
    "AvailabilityStore",
    "DayAvailability",
    "ListingLocks",
]

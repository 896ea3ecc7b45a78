"""Database models."""

from staycal.models.availability import AvailabilityDay, AvailabilityStatus
from staycal.models.booking import Booking, BookingStatus, PaymentMethod
from staycal.models.hold import HoldStatus, ReservationHold
from staycal.models.listing import Listing

__all__ = [
    "AvailabilityDay",
    "AvailabilityStatus",
    "Booking",
    "BookingStatus",
    "HoldStatus",
    "Listing",
    "PaymentMethod",
    "ReservationHold",
]

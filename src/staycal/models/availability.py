"""Per-listing, per-day availability record."""

from __future__ import annotations

import datetime as dt
from enum import Enum

from sqlalchemy import CheckConstraint, Date, DateTime, Float, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from staycal.database import Base


class AvailabilityStatus(str, Enum):
    AVAILABLE = "available"
    BOOKED = "booked"
    BLOCKED = "blocked"
    MAINTENANCE = "maintenance"
    RESERVED = "reserved"


DEFAULT_PRICE_MODIFIER = 1.0
DEFAULT_MIN_STAY_NIGHTS = 1


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


class AvailabilityDay(Base):
    __tablename__ = "availability_days"
    __table_args__ = (
        UniqueConstraint("listing_id", "date", name="uq_availability_listing_date"),
        CheckConstraint("price_modifier > 0", name="ck_availability_price_modifier_positive"),
        CheckConstraint("min_stay_nights >= 1", name="ck_availability_min_stay_positive"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    listing_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=AvailabilityStatus.AVAILABLE.value, nullable=False)
    price_modifier: Mapped[float] = mapped_column(Float, default=DEFAULT_PRICE_MODIFIER, nullable=False)
    min_stay_nights: Mapped[int] = mapped_column(Integer, default=DEFAULT_MIN_STAY_NIGHTS, nullable=False)
    max_stay_nights: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    hold_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    reserved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reserved_until: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)
    booking_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    def __repr__(self) -> str:
        return f"<AvailabilityDay listing_id={self.listing_id!r} date={self.date} status={self.status!r}>"

    def is_held(self, now: dt.datetime) -> bool:
        """True while a reservation on this day has not yet lapsed."""
        return (
            self.status == AvailabilityStatus.RESERVED
            and self.reserved_until is not None
            and now < self.reserved_until
        )

    def effective_status(self, now: dt.datetime) -> str:
        """Stored status with lazy hold expiry applied."""
        if self.status == AvailabilityStatus.RESERVED and not self.is_held(now):
            return AvailabilityStatus.AVAILABLE.value
        return self.status

    def clear_reservation(self) -> None:
        self.hold_id = None
        self.reserved_by = None
        self.reserved_until = None

"""Time-bounded reservation hold model."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import Date, DateTime, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from staycal.database import Base


class HoldStatus(str, Enum):
    ACTIVE = "active"
    RELEASED = "released"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"


class ReservationHold(Base):
    __tablename__ = "reservation_holds"
    __table_args__ = (Index("ix_reservation_holds_listing_status", "listing_id", "status"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    listing_id: Mapped[str] = mapped_column(String(64), nullable=False)
    check_in: Mapped[date] = mapped_column(Date, nullable=False)
    check_out: Mapped[date] = mapped_column(Date, nullable=False)  # exclusive
    holder_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=HoldStatus.ACTIVE.value, nullable=False)
    booking_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    quoted_total: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)  # locked at reserve time
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(timezone.utc).replace(tzinfo=None)
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ReservationHold id={self.id} listing_id={self.listing_id!r} "
            f"{self.check_in}..{self.check_out} holder={self.holder_id!r} status={self.status!r}>"
        )

    @property
    def nights(self) -> int:
        return (self.check_out - self.check_in).days

    def is_active(self, now: datetime) -> bool:
        return self.status == HoldStatus.ACTIVE and now < self.expires_at

    def seconds_remaining(self, now: datetime) -> int:
        if not self.is_active(now):
            return 0
        return int((self.expires_at - now).total_seconds())

"""Listing catalog model."""

from __future__ import annotations

from sqlalchemy import Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from staycal.database import Base


class Listing(Base):
    __tablename__ = "listings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    base_price_per_night: Mapped[float] = mapped_column(Float, default=100.0)
    max_guests: Mapped[int] = mapped_column(Integer, default=4)

    def __repr__(self) -> str:
        return f"<Listing id={self.id!r} name={self.name!r}>"

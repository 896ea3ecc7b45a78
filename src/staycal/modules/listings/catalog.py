"""Read-only listing catalog used for base prices and guest limits."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy.orm import Session

from staycal.database import get_session
from staycal.models.listing import Listing
from staycal.modules.availability.store import SessionFactory
from staycal.modules.pricing.calculator import to_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ListingInfo:
    id: str
    base_price_per_night: Decimal
    max_guests: int
    name: str | None = None


class ListingCatalog(Protocol):
    def get_listing(self, listing_id: str) -> ListingInfo | None: ...


class SqlListingCatalog:
    """Catalog backed by the ``listings`` table."""

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        self._session_factory = session_factory or get_session

    def get_listing(self, listing_id: str) -> ListingInfo | None:
        session = self._session_factory()
        try:
            listing = session.get(Listing, listing_id)
            return _to_info(listing) if listing else None
        finally:
            session.close()

    def all_listings(self) -> list[ListingInfo]:
        session = self._session_factory()
        try:
            return [_to_info(listing) for listing in session.query(Listing).order_by(Listing.id).all()]
        finally:
            session.close()

    def seed_from_config(self, listings_cfg: list[dict[str, Any]]) -> list[str]:
        """Insert or refresh listings declared in config.yaml."""
        seeded: list[str] = []
        session = self._session_factory()
        try:
            for cfg in listings_cfg:
                self._upsert(session, cfg)
                seeded.append(str(cfg["id"]))
            session.commit()
        finally:
            session.close()
        if seeded:
            logger.info("Seeded %d listings from config", len(seeded))
        return seeded

    @staticmethod
    def _upsert(session: Session, cfg: dict[str, Any]) -> Listing:
        listing_id = str(cfg["id"])
        listing = session.get(Listing, listing_id)
        if listing is None:
            listing = Listing(id=listing_id)
            session.add(listing)
        listing.name = cfg.get("name", listing_id)
        listing.base_price_per_night = float(cfg.get("base_price_per_night", 100.0))
        listing.max_guests = int(cfg.get("max_guests", 4))
        return listing


def _to_info(listing: Listing) -> ListingInfo:
    return ListingInfo(
        id=listing.id,
        base_price_per_night=to_decimal(listing.base_price_per_night, "base_price_per_night"),
        max_guests=listing.max_guests,
        name=listing.name,
    )

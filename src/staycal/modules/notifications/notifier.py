"""Best-effort booking confirmation messages."""

from __future__ import annotations

import logging
from datetime import date
from pathlib import Path
from typing import Any

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from staycal.config import get_env, section
from staycal.errors import NotificationFailure
from staycal.events import Event, EventBus, EventType, event_bus
from staycal.modules.listings.catalog import ListingCatalog

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent.parent / "templates"


class BookingNotifier:
    """Renders confirmation messages and posts them to a delivery webhook.

    Runs as an event bus subscriber, so a delivery failure is logged by the bus
    and never reaches the booking that triggered it.
    """

    def __init__(
        self,
        catalog: ListingCatalog | None = None,
        webhook_url: str | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self._catalog = catalog
        self._webhook_url = webhook_url or get_env("NOTIFICATION_WEBHOOK_URL")
        self._api_key = get_env("NOTIFICATION_API_KEY")
        timeout = section("notifications").get("timeout_seconds", 10)
        self._client = client or httpx.Client(timeout=timeout)
        self._jinja_env = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=select_autoescape(default=False),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._webhook_url)

    def setup_event_handlers(self, bus: EventBus | None = None) -> None:
        """Subscribe to booking confirmations."""
        (bus or event_bus).subscribe(EventType.BOOKING_CONFIRMED, self._on_booking_confirmed)

    def _on_booking_confirmed(self, event: Event) -> None:
        self.send_booking_confirmation(event.data)

    def render(self, data: dict[str, Any]) -> str:
        listing_name = data.get("listing_id")
        if self._catalog is not None and data.get("listing_id"):
            listing = self._catalog.get_listing(data["listing_id"])
            if listing is not None and listing.name:
                listing_name = listing.name

        template = self._jinja_env.get_template("booking_confirmation.txt")
        return template.render(
            booking_id=data.get("booking_id"),
            listing_name=listing_name,
            check_in=_pretty_date(data.get("check_in")),
            check_out=_pretty_date(data.get("check_out")),
            total_nights=data.get("total_nights", 0),
            total_amount=data.get("total_amount"),
            payment_method=data.get("payment_method"),
        )

    def send_booking_confirmation(self, data: dict[str, Any]) -> None:
        """Deliver one confirmation. Raises ``NotificationFailure`` on delivery errors."""
        body = self.render(data)
        if not self.is_configured:
            logger.info("Notification webhook not configured, confirmation for %s not sent", data.get("booking_id"))
            logger.debug("Confirmation body:\n%s", body)
            return

        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        payload = {
            "type": "booking_confirmation",
            "booking_id": data.get("booking_id"),
            "guest_id": data.get("guest_id"),
            "body": body,
        }
        try:
            resp = self._client.post(self._webhook_url, json=payload, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise NotificationFailure(
                f"Confirmation for booking {data.get('booking_id')} not delivered: {exc}"
            ) from exc
        logger.info("Confirmation sent for booking %s", data.get("booking_id"))


def _pretty_date(value: str | None) -> str:
    if not value:
        return ""
    return date.fromisoformat(value).strftime("%B %d, %Y")

"""FastAPI application exposing the availability and booking API."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from staycal.config import settings
from staycal.database import init_db
from staycal.dates import Clock, date_range, utcnow, validate_range
from staycal.errors import (
    ConflictError,
    HoldExpiredError,
    NotFoundError,
    PaymentFailure,
    PaymentUnavailable,
    ValidationError,
)
from staycal.events import EventBus, event_bus
from staycal.models.booking import Booking
from staycal.models.hold import ReservationHold
from staycal.modules.availability.query import AvailabilityQueryService, DayAvailability
from staycal.modules.availability.store import AvailabilityStore, SessionFactory
from staycal.modules.bookings.collaborators import PaymentProcessor
from staycal.modules.bookings.state_machine import BookingStateMachine
from staycal.modules.bulk.mutations import BulkMutationService, BulkResult
from staycal.modules.holds.manager import ReservationHoldManager
from staycal.modules.listings.catalog import SqlListingCatalog
from staycal.modules.notifications.notifier import BookingNotifier
from staycal.scheduler import create_scheduler

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


@dataclass
class Services:
    store: AvailabilityStore
    catalog: SqlListingCatalog
    query: AvailabilityQueryService
    holds: ReservationHoldManager
    bookings: BookingStateMachine
    bulk: BulkMutationService
    notifier: BookingNotifier


def build_services(
    session_factory: SessionFactory | None = None,
    clock: Clock | None = None,
    bus: EventBus | None = None,
    payments: PaymentProcessor | None = None,
) -> Services:
    """Wire the engine's services around one store and one event bus."""
    bus = bus or event_bus
    clock = clock or utcnow
    store = AvailabilityStore(session_factory=session_factory)
    catalog = SqlListingCatalog(session_factory=session_factory)
    holds = ReservationHoldManager(store=store, catalog=catalog, clock=clock, bus=bus)
    notifier = BookingNotifier(catalog=catalog)
    notifier.setup_event_handlers(bus)
    return Services(
        store=store,
        catalog=catalog,
        query=AvailabilityQueryService(store=store, clock=clock),
        holds=holds,
        bookings=BookingStateMachine(
            holds=holds, catalog=catalog, payments=payments, store=store, clock=clock, bus=bus,
        ),
        bulk=BulkMutationService(store=store, clock=clock, bus=bus),
        notifier=notifier,
    )


def seed_listings(services: Services) -> None:
    """Load listings from config and materialize their upcoming calendars."""
    listing_ids = services.catalog.seed_from_config(settings.get("listings") or [])
    today = utcnow().date()
    for listing_id in listing_ids:
        services.store.initialize_calendar(listing_id, today)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    logger.info("Starting StayCal...")
    init_db()
    services = build_services()
    seed_listings(services)
    app.state.services = services

    scheduler = create_scheduler(services.holds)
    scheduler.start()
    logger.info("Scheduler started.")

    yield

    scheduler.shutdown()
    logger.info("StayCal shut down.")


app = FastAPI(title="StayCal", lifespan=lifespan)


def get_services(request: Request) -> Services:
    return request.app.state.services


# --- Error mapping ---


def _error(status_code: int, exc: Exception, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc), **extra})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error(400, exc)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error(404, exc)


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    return _error(
        409, exc,
        listing_id=exc.listing_id,
        date=exc.date.isoformat() if exc.date else None,
        status=exc.status,
    )


@app.exception_handler(HoldExpiredError)
async def hold_expired_handler(request: Request, exc: HoldExpiredError):
    return _error(410, exc, hold_id=exc.hold_id)


@app.exception_handler(PaymentFailure)
async def payment_failure_handler(request: Request, exc: PaymentFailure):
    return _error(402, exc)


@app.exception_handler(PaymentUnavailable)
async def payment_unavailable_handler(request: Request, exc: PaymentUnavailable):
    return _error(503, exc)


# --- Request bodies ---


class HoldRequest(BaseModel):
    check_in: date
    check_out: date
    holder_id: str
    ttl_minutes: float | None = None


class ReleaseRequest(BaseModel):
    check_in: date
    check_out: date
    holder_id: str


class HoldReleaseRequest(BaseModel):
    holder_id: str | None = None


class BulkRequest(BaseModel):
    status: str
    dates: list[date] | None = None
    start: date | None = None
    end: date | None = None
    price_modifier: float | None = None
    min_stay_nights: int | None = None
    max_stay_nights: int | None = None
    notes: str | None = None


class QuickActionRequest(BaseModel):
    start: date | None = None
    end: date | None = None
    factor: float | None = None
    cap: float | None = None


class BookingRequest(BaseModel):
    listing_id: str
    guest_id: str
    check_in: date
    check_out: date
    payment_method: str
    num_guests: int = 1
    special_requests: str | None = None
    hold_id: str | None = None


class PaymentRequest(BaseModel):
    payment_details: dict[str, Any] | None = None
    success: bool | None = None
    payment_reference: str | None = None
    error: str | None = None


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=200)
    admin_notes: str | None = None


# --- Serializers ---


def _day_dict(day: DayAvailability) -> dict:
    return {
        "date": day.date.isoformat(),
        "status": day.status,
        "price_modifier": day.price_modifier,
        "min_stay_nights": day.min_stay_nights,
        "max_stay_nights": day.max_stay_nights,
        "notes": day.notes,
        "reserved_until": day.reserved_until.isoformat() if day.reserved_until else None,
    }


def _hold_dict(hold: ReservationHold) -> dict:
    return {
        "hold_id": hold.id,
        "listing_id": hold.listing_id,
        "holder_id": hold.holder_id,
        "check_in": hold.check_in.isoformat(),
        "check_out": hold.check_out.isoformat(),
        "status": hold.status,
        "expires_at": hold.expires_at.isoformat(),
        "quoted_total": str(hold.quoted_total) if hold.quoted_total is not None else None,
    }


def _booking_dict(booking: Booking) -> dict:
    return {
        "id": booking.id,
        "listing_id": booking.listing_id,
        "guest_id": booking.guest_id,
        "check_in": booking.check_in_date.isoformat(),
        "check_out": booking.check_out_date.isoformat(),
        "total_nights": booking.total_nights,
        "total_amount": str(booking.total_amount),
        "num_guests": booking.num_guests,
        "payment_method": booking.payment_method,
        "status": booking.status,
        "hold_id": booking.hold_id,
        "payment_reference": booking.payment_reference,
        "cancellation_reason": booking.cancellation_reason,
    }


def _bulk_dict(result: BulkResult) -> dict:
    return {
        "listing_id": result.listing_id,
        "updated": [d.isoformat() for d in result.updated],
        "skipped": [d.isoformat() for d in result.skipped],
    }


# --- Availability routes ---


@app.get("/listings/{listing_id}/availability")
def get_availability(
    listing_id: str,
    start: date = Query(...),
    end: date = Query(...),
    services: Services = Depends(get_services),
):
    """Day-by-day calendar for [start, end)."""
    days = services.query.get_range(listing_id, start, end)
    return {"listing_id": listing_id, "days": [_day_dict(d) for d in days]}


@app.get("/listings/{listing_id}/availability/stats")
def get_availability_stats(
    listing_id: str,
    start: date = Query(...),
    end: date = Query(...),
    services: Services = Depends(get_services),
):
    stats = services.query.compute_stats(listing_id, start, end)
    return {"listing_id": listing_id, **asdict(stats)}


@app.get("/listings/{listing_id}/availability/check")
def check_availability(
    listing_id: str,
    check_in: date = Query(...),
    check_out: date = Query(...),
    services: Services = Depends(get_services),
):
    """Whether the stay can be held now, with its price."""
    listing = services.catalog.get_listing(listing_id)
    if listing is None:
        raise NotFoundError(f"Listing {listing_id} not found")
    check = services.query.check_availability(
        listing_id, check_in, check_out, base_price=listing.base_price_per_night,
    )
    return {
        "listing_id": listing_id,
        "check_in": check_in.isoformat(),
        "check_out": check_out.isoformat(),
        "total_nights": check.total_nights,
        "is_available": check.is_available,
        "unavailable_dates": [d.isoformat() for d in check.unavailable_dates],
        "min_stay_nights": check.min_stay_nights,
        "max_stay_nights": check.max_stay_nights,
        "meets_stay_rules": check.meets_stay_rules,
        "total_price": str(check.total_price) if check.total_price is not None else None,
        "nightly": [
            {"date": n.date.isoformat(), "price_modifier": str(n.price_modifier), "price": str(n.price)}
            for n in (check.quote.nightly if check.quote else [])
        ],
    }


# --- Hold routes ---


@app.post("/listings/{listing_id}/holds", status_code=201)
def create_hold(listing_id: str, body: HoldRequest, services: Services = Depends(get_services)):
    hold_id = services.holds.reserve(
        listing_id, body.check_in, body.check_out, body.holder_id, ttl_minutes=body.ttl_minutes,
    )
    return _hold_dict(services.holds.get_hold(hold_id))


@app.post("/listings/{listing_id}/holds/release")
def release_dates(listing_id: str, body: ReleaseRequest, services: Services = Depends(get_services)):
    released = services.holds.release(listing_id, body.check_in, body.check_out, body.holder_id)
    return {"listing_id": listing_id, "released": released}


@app.post("/holds/{hold_id}/release")
def release_hold(hold_id: str, body: HoldReleaseRequest | None = None, services: Services = Depends(get_services)):
    holder_id = body.holder_id if body else None
    released = services.holds.release_hold(hold_id, holder_id=holder_id)
    return {"hold_id": hold_id, "released": released}


# --- Host routes ---


@app.post("/listings/{listing_id}/availability/bulk")
def bulk_update(listing_id: str, body: BulkRequest, services: Services = Depends(get_services)):
    """Set status and pricing rules on explicit dates or a [start, end) range."""
    if body.dates is not None:
        dates = body.dates
    elif body.start is not None and body.end is not None:
        validate_range(body.start, body.end)
        dates = list(date_range(body.start, body.end))
    else:
        raise ValidationError("Provide either dates or a start and end")
    result = services.bulk.apply_range(
        listing_id,
        dates,
        body.status,
        price_modifier=body.price_modifier,
        min_stay_nights=body.min_stay_nights,
        notes=body.notes,
        max_stay_nights=body.max_stay_nights,
    )
    return _bulk_dict(result)


@app.post("/listings/{listing_id}/availability/quick-actions/{action}")
def quick_action(
    listing_id: str,
    action: str,
    body: QuickActionRequest | None = None,
    services: Services = Depends(get_services),
):
    body = body or QuickActionRequest()
    if action == "block-weekends":
        result = services.bulk.block_weekends(listing_id, body.start, body.end)
    elif action == "unblock-all":
        result = services.bulk.unblock_all(listing_id, body.start, body.end)
    elif action == "boost-pricing":
        result = services.bulk.boost_pricing(
            listing_id, body.start, body.end, factor=body.factor, cap=body.cap,
        )
    else:
        raise NotFoundError(f"Unknown quick action {action!r}")
    return _bulk_dict(result)


# --- Booking routes ---


@app.post("/bookings", status_code=201)
def create_booking(body: BookingRequest, services: Services = Depends(get_services)):
    booking = services.bookings.create_booking(
        body.listing_id,
        body.guest_id,
        body.check_in,
        body.check_out,
        body.payment_method,
        num_guests=body.num_guests,
        special_requests=body.special_requests,
        hold_id=body.hold_id,
    )
    return _booking_dict(booking)


@app.get("/bookings/{booking_id}")
def get_booking(booking_id: str, services: Services = Depends(get_services)):
    return _booking_dict(services.bookings.get_booking(booking_id))


@app.post("/bookings/{booking_id}/payment")
def record_payment(booking_id: str, body: PaymentRequest, services: Services = Depends(get_services)):
    """Charge through the configured processor, or record a processor callback."""
    if body.payment_details is not None:
        booking = services.bookings.pay(booking_id, body.payment_details)
    elif body.success is True:
        booking = services.bookings.confirm_payment(booking_id, payment_reference=body.payment_reference)
    elif body.success is False:
        reason = body.error or "payment declined"
        services.bookings.fail_payment(booking_id, reason)
        raise PaymentFailure(reason)
    else:
        raise ValidationError("Provide payment_details or a success flag")
    return _booking_dict(booking)


@app.post("/bookings/{booking_id}/cancel")
def cancel_booking(booking_id: str, body: CancelRequest | None = None, services: Services = Depends(get_services)):
    body = body or CancelRequest()
    booking = services.bookings.cancel(booking_id, reason=body.reason, admin_notes=body.admin_notes)
    return _booking_dict(booking)


@app.post("/bookings/{booking_id}/complete")
def complete_booking(booking_id: str, services: Services = Depends(get_services)):
    return _booking_dict(services.bookings.complete(booking_id))


def main() -> None:
    """Entry point for running the app."""
    import uvicorn

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    init_db()
    logger.info("Database initialized.")

    uvicorn.run(
        "staycal.app:app",
        host="127.0.0.1",
        port=8000,
    )


if __name__ == "__main__":
    main()

"""Domain exceptions raised by the reservation engine.

Every error the engine raises on purpose derives from ``StayCalError`` so the
HTTP layer can map the whole family in one place. Validation errors are always
raised before any row is touched.
"""

from __future__ import annotations

from datetime import date


class StayCalError(Exception):
    """Base class for engine errors."""


class ValidationError(StayCalError):
    """Malformed input: inverted date range, bad modifier, stay rules not met."""


class InvalidTransitionError(ValidationError):
    """A booking was asked to move to a state its current state cannot reach."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid booking transition: {current} -> {target}")


class NotFoundError(StayCalError):
    """A booking, hold or listing does not exist."""


class ConflictError(StayCalError):
    """A requested date is held, booked or blocked by someone else."""

    def __init__(
        self,
        listing_id: str,
        day: date | None = None,
        status: str | None = None,
        message: str | None = None,
    ) -> None:
        self.listing_id = listing_id
        self.date = day
        self.status = status
        if message is None:
            message = f"Listing {listing_id} is not available on {day}"
            if status:
                message += f" (currently {status})"
        super().__init__(message)


class HoldExpiredError(StayCalError):
    """The hold lapsed, was already closed, or belongs to another holder."""

    def __init__(self, hold_id: str | None, reason: str = "expired") -> None:
        self.hold_id = hold_id
        self.reason = reason
        super().__init__(f"Hold {hold_id} is no longer valid: {reason}")


class PaymentFailure(StayCalError):
    """The payment processor declined or failed to charge."""


class PaymentUnavailable(StayCalError):
    """No payment processor is configured to charge cards."""


class NotificationFailure(StayCalError):
    """A confirmation message could not be delivered."""

"""Booking lifecycle."""

from staycal.modules.bookings.collaborators import PaymentProcessor, PaymentResult
from staycal.modules.bookings.state_machine import BookingStateMachine

__all__ = ["BookingStateMachine", "PaymentProcessor", "PaymentResult"]

"""Reservation holds."""

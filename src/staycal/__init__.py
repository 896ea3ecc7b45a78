"""StayCal: availability calendar, reservation holds and booking lifecycle."""

__version__ = "0.1.0"

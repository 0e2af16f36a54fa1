"""Seat hold and booking engine with real-time seat status."""

__version__ = "0.1.0"

"""Test helper utilities for library mail tests."""

from .library_fixtures import (
    FakeClock,
    RecordingDelivery,
    make_database,
    seed_borrowing,
    seed_library,
)

__all__ = [
    "FakeClock",
    "RecordingDelivery",
    "make_database",
    "seed_borrowing",
    "seed_library",
]

"""Utility functions for time handling."""

from .timestamps import (
    Clock,
    calendar_days_between,
    ensure_utc,
    format_display_date,
    from_storage,
    local_date,
    to_storage,
    utc_now,
)

__all__ = [
    "Clock",
    "utc_now",
    "ensure_utc",
    "to_storage",
    "from_storage",
    "format_display_date",
    "local_date",
    "calendar_days_between",
]

"""Timestamp utilities for UTC handling, storage encoding and display.

All timestamps flowing through the notification pipeline are timezone-aware
UTC datetimes. This module provides:
- The default clock (utc_now)
- Normalisation of naive/foreign datetimes to UTC
- A sortable string encoding used for database columns
- Human-readable date formatting for email bodies
- Calendar-day arithmetic for overdue counts
"""

from datetime import date, datetime, timezone, tzinfo
from typing import Callable, Optional

Clock = Callable[[], datetime]

# Fixed-width format so that lexical order equals chronological order
STORAGE_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Current UTC time with timezone info

    Example:
        >>> now = utc_now()
        >>> now.tzinfo == timezone.utc
        True
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure a datetime is timezone-aware and in UTC.

    Naive datetimes are treated as UTC; aware datetimes are converted.

    Args:
        dt: Datetime to convert (can be None)

    Returns:
        Timezone-aware datetime in UTC, or None if input is None
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def to_storage(dt: Optional[datetime]) -> Optional[str]:
    """Encode a datetime for a string column.

    Args:
        dt: Datetime to encode (naive values are treated as UTC)

    Returns:
        Fixed-width ISO 8601 string with 'Z' suffix, or None
    """
    dt_utc = ensure_utc(dt)
    if dt_utc is None:
        return None
    return dt_utc.strftime(STORAGE_FORMAT)


def from_storage(value: Optional[str]) -> Optional[datetime]:
    """Decode a string column written by to_storage().

    Also accepts values without microseconds.

    Args:
        value: Stored timestamp string

    Returns:
        Timezone-aware UTC datetime, or None for empty values
    """
    if not value:
        return None

    cleaned = value.rstrip("Z")
    try:
        dt = datetime.strptime(cleaned, "%Y-%m-%dT%H:%M:%S.%f")
    except ValueError:
        dt = datetime.strptime(cleaned, "%Y-%m-%dT%H:%M:%S")

    return dt.replace(tzinfo=timezone.utc)


def format_display_date(dt: datetime, tz: Optional[tzinfo] = None) -> str:
    """Format a datetime the way it is shown to library members.

    Args:
        dt: Datetime to format
        tz: Timezone the member-facing date is expressed in (default UTC)

    Returns:
        Date such as "March 5, 2026"

    Example:
        >>> format_display_date(datetime(2026, 3, 5, 9, 0, tzinfo=timezone.utc))
        'March 5, 2026'
    """
    local = ensure_utc(dt).astimezone(tz or timezone.utc)
    return f"{local:%B} {local.day}, {local.year}"


def local_date(dt: datetime, tz: Optional[tzinfo] = None) -> date:
    """Return the calendar date of a datetime in the given timezone."""
    return ensure_utc(dt).astimezone(tz or timezone.utc).date()


def calendar_days_between(
    earlier: datetime, later: datetime, tz: Optional[tzinfo] = None
) -> int:
    """Count calendar-day boundaries between two instants.

    A book due yesterday at 23:00 is one day overdue at 09:00 today, even
    though fewer than 24 hours have elapsed.

    Args:
        earlier: Start instant
        later: End instant
        tz: Timezone whose calendar is used (default UTC)

    Returns:
        Number of days (negative if later precedes earlier)
    """
    return (local_date(later, tz) - local_date(earlier, tz)).days

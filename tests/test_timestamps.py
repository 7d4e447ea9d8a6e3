"""Unit tests for timestamp utilities."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from library_mail.utils.timestamps import (
    calendar_days_between,
    ensure_utc,
    format_display_date,
    from_storage,
    local_date,
    to_storage,
    utc_now,
)


class TestUtcNow:
    """Tests for utc_now function."""

    def test_utc_now_returns_utc_datetime(self):
        """Test that utc_now returns a timezone-aware datetime in UTC."""
        now = utc_now()

        assert now.tzinfo == timezone.utc

    def test_utc_now_is_recent(self):
        """Test that utc_now returns a recent timestamp."""
        before = datetime.now(timezone.utc)
        now = utc_now()
        after = datetime.now(timezone.utc)

        assert before <= now <= after


class TestEnsureUtc:
    """Tests for ensure_utc function."""

    def test_ensure_utc_with_none(self):
        """Test that None input returns None."""
        assert ensure_utc(None) is None

    def test_ensure_utc_with_naive_datetime(self):
        """Test that naive datetime is treated as UTC."""
        result = ensure_utc(datetime(2026, 3, 2, 12, 0, 0))

        assert result == datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)

    def test_ensure_utc_with_other_timezone(self):
        """Test that an aware datetime is converted to UTC."""
        est = timezone(timedelta(hours=-5))
        result = ensure_utc(datetime(2026, 3, 2, 7, 0, 0, tzinfo=est))

        assert result.tzinfo == timezone.utc
        assert result.hour == 12


class TestStorageEncoding:
    """Tests for to_storage / from_storage."""

    def test_to_storage_is_fixed_width(self):
        """Test every encoded value has the same length."""
        a = to_storage(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))
        b = to_storage(datetime(2026, 12, 31, 23, 59, 59, 999999, tzinfo=timezone.utc))

        assert a == "2026-03-02T09:00:00.000000Z"
        assert len(a) == len(b)

    def test_lexical_order_matches_chronological_order(self):
        """Test encoded strings sort the same way as the datetimes."""
        base = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        values = [base + timedelta(microseconds=1), base, base - timedelta(days=400)]

        assert sorted(to_storage(v) for v in values) == [to_storage(v) for v in sorted(values)]

    def test_to_storage_converts_to_utc(self):
        """Test aware non-UTC values are stored as UTC."""
        plus_two = timezone(timedelta(hours=2))
        assert to_storage(datetime(2026, 3, 2, 11, 0, tzinfo=plus_two)) == "2026-03-02T09:00:00.000000Z"

    def test_from_storage_decodes(self):
        """Test decoding restores an aware UTC datetime."""
        dt = datetime(2026, 3, 2, 9, 0, 5, 123456, tzinfo=timezone.utc)

        assert from_storage(to_storage(dt)) == dt

    def test_from_storage_accepts_seconds_precision(self):
        """Test values written without microseconds are accepted."""
        assert from_storage("2026-03-02T09:00:00Z") == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def test_none_passes_through(self):
        """Test None and empty values map to None."""
        assert to_storage(None) is None
        assert from_storage(None) is None
        assert from_storage("") is None


class TestDisplayDates:
    """Tests for member-facing date formatting and calendar arithmetic."""

    def test_format_display_date(self):
        """Test the long month format without a leading zero."""
        dt = datetime(2026, 3, 5, 9, 0, tzinfo=timezone.utc)

        assert format_display_date(dt) == "March 5, 2026"

    def test_format_display_date_in_timezone(self):
        """Test the date shown follows the given timezone."""
        dt = datetime(2026, 3, 5, 2, 0, tzinfo=timezone.utc)

        assert format_display_date(dt, ZoneInfo("America/New_York")) == "March 4, 2026"

    def test_local_date(self):
        """Test local_date uses the timezone's calendar."""
        dt = datetime(2026, 3, 5, 23, 30, tzinfo=timezone.utc)

        assert local_date(dt).day == 5
        assert local_date(dt, ZoneInfo("Asia/Tokyo")).day == 6

    def test_calendar_days_counts_boundaries(self):
        """Test a due time late yesterday is one day ago this morning."""
        due = datetime(2026, 3, 4, 23, 0, tzinfo=timezone.utc)
        now = datetime(2026, 3, 5, 9, 0, tzinfo=timezone.utc)

        assert calendar_days_between(due, now) == 1

    def test_calendar_days_same_day_is_zero(self):
        """Test instants on the same calendar day are zero days apart."""
        due = datetime(2026, 3, 5, 1, 0, tzinfo=timezone.utc)
        now = datetime(2026, 3, 5, 9, 0, tzinfo=timezone.utc)

        assert calendar_days_between(due, now) == 0

    def test_calendar_days_negative_when_reversed(self):
        """Test the result is negative when the later instant precedes the earlier one."""
        a = datetime(2026, 3, 10, tzinfo=timezone.utc)
        b = datetime(2026, 3, 7, tzinfo=timezone.utc)

        assert calendar_days_between(a, b) == -3

"""
Tests for timestamp helpers.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from accounting_sync.utils.dates import (
    ensure_utc,
    latest,
    parse_date,
    parse_timestamp,
    to_iso,
)

NOON = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class TestParseTimestamp:
    """Tests for parse_timestamp()."""

    def test_iso_with_z(self):
        """Test a trailing Z."""
        assert parse_timestamp("2024-01-15T12:00:00Z") == NOON

    def test_iso_with_offset(self):
        """Test that offsets are converted to UTC."""
        assert parse_timestamp("2024-01-15T20:00:00+08:00") == NOON

    def test_naive_is_utc(self):
        """Test that a naive value is taken as UTC."""
        assert parse_timestamp("2024-01-15T12:00:00").tzinfo == timezone.utc

    def test_provider_ms_date(self):
        """Test the provider's /Date(ms+zzzz)/ format."""
        ms = int(NOON.timestamp() * 1000)

        assert parse_timestamp(f"/Date({ms}+0000)/") == NOON

    def test_empty(self):
        """Test None and empty strings."""
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None

    def test_garbage(self):
        """Test that unreadable values raise ValueError."""
        with pytest.raises(ValueError):
            parse_timestamp("yesterday")


class TestStorageFormat:
    """Tests for to_iso() ordering."""

    def test_round_trip(self):
        """Test that a stored value parses back equal."""
        assert parse_timestamp(to_iso(NOON)) == NOON

    def test_fixed_width_sorts_chronologically(self):
        """Test that text order matches time order, microseconds included."""
        earlier = to_iso(NOON)
        later = to_iso(NOON + timedelta(microseconds=1))

        assert len(earlier) == len(later)
        assert earlier < later

    def test_none(self):
        assert to_iso(None) is None


class TestHelpers:
    """Tests for parse_date(), ensure_utc() and latest()."""

    def test_parse_date(self):
        """Test the accepted date forms."""
        assert parse_date("2024-01-15T12:00:00") == "2024-01-15"
        assert parse_date(date(2024, 1, 15)) == "2024-01-15"
        assert parse_date(NOON) == "2024-01-15"
        assert parse_date(None) is None

    def test_ensure_utc_converts(self):
        """Test that aware values are converted to UTC."""
        plus_two = timezone(timedelta(hours=2))
        value = datetime(2024, 1, 15, 14, 0, tzinfo=plus_two)

        assert ensure_utc(value) == NOON
        assert ensure_utc(value).tzinfo == timezone.utc

    def test_latest(self):
        """Test that None values are ignored."""
        assert latest(None, NOON, NOON - timedelta(hours=1)) == NOON
        assert latest(None, None) is None

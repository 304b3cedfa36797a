"""Tests for timestamp decoding."""

from datetime import datetime, timedelta, timezone

import pytest

from rewards_client.services.redemption.timestamps import (
    DEFAULT_EXPIRY_WINDOW,
    TimestampFormat,
    parse_expiry,
    parse_timestamp,
)

NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestParseTimestamp:
    """Tests for parse_timestamp."""

    def test_iso_with_fractional_seconds(self):
        """Test ISO-8601 with milliseconds and Z suffix."""
        parsed = parse_timestamp("2026-01-01T12:15:00.250Z")

        assert parsed.source == TimestampFormat.ISO_FRACTIONAL
        assert parsed.value == NOW + timedelta(minutes=15, milliseconds=250)

    def test_iso_without_fractional_seconds(self):
        """Test plain ISO-8601."""
        parsed = parse_timestamp("2026-01-01T12:15:00Z")

        assert parsed.source == TimestampFormat.ISO_PLAIN
        assert parsed.value == NOW + timedelta(minutes=15)

    def test_iso_with_offset_converted_to_utc(self):
        """Test offsets are normalised to UTC."""
        parsed = parse_timestamp("2026-01-01T14:00:00+02:00")

        assert parsed.value == NOW
        assert parsed.value.tzinfo == timezone.utc

    def test_naive_iso_assumed_utc(self):
        """Test naive timestamps are treated as UTC."""
        parsed = parse_timestamp("2026-01-01T12:00:00")

        assert parsed.value == NOW

    def test_epoch_seconds(self):
        """Test numeric epoch seconds."""
        parsed = parse_timestamp(NOW.timestamp())

        assert parsed.source == TimestampFormat.EPOCH_SECONDS
        assert parsed.value == NOW

    def test_epoch_string(self):
        """Test epoch seconds sent as a string."""
        parsed = parse_timestamp(str(int(NOW.timestamp())))

        assert parsed.source == TimestampFormat.EPOCH_STRING
        assert parsed.value == NOW

    def test_store_timestamp(self):
        """Test serialized document store timestamps."""
        seconds = int(NOW.timestamp())

        parsed = parse_timestamp({"_seconds": seconds, "_nanoseconds": 500_000_000})

        assert parsed.source == TimestampFormat.STORE_TIMESTAMP
        assert parsed.value == NOW + timedelta(milliseconds=500)

    def test_datetime_passthrough(self):
        """Test datetime values are accepted as-is."""
        parsed = parse_timestamp(NOW)

        assert parsed.source == TimestampFormat.DATETIME
        assert parsed.value == NOW

    @pytest.mark.parametrize("raw", [None, "", "soon", True, [], {"seconds": "x"}])
    def test_unrecognised_values(self, raw):
        """Test values no attempt accepts."""
        assert parse_timestamp(raw) is None


class TestParseExpiry:
    """Tests for parse_expiry fallback."""

    def test_valid_value_used(self):
        """Test a parseable expiry is returned unchanged."""
        parsed = parse_expiry("2026-01-01T12:05:00Z", NOW)

        assert parsed.value == NOW + timedelta(minutes=5)

    def test_missing_value_defaults_to_window(self):
        """Test missing expiry falls back to the redemption window."""
        parsed = parse_expiry(None, NOW)

        assert parsed.source == TimestampFormat.DEFAULT
        assert parsed.value == NOW + DEFAULT_EXPIRY_WINDOW
        assert DEFAULT_EXPIRY_WINDOW == timedelta(minutes=15)

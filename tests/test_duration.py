"""Tests for duration parsing."""

import math

import pytest

from dkan_query import parse_duration


class TestParseDuration:
    """Tests for parse_duration function."""

    def test_milliseconds(self) -> None:
        assert parse_duration("100ms") == 100
        assert parse_duration("0ms") == 0

    def test_seconds(self) -> None:
        assert parse_duration("1s") == 1000
        assert parse_duration("30s") == 30000

    def test_minutes(self) -> None:
        """Test parsing minutes (the default gc time)."""
        assert parse_duration("5m") == 300_000

    def test_hours_and_days(self) -> None:
        assert parse_duration("2h") == 7_200_000
        assert parse_duration("7d") == 604_800_000

    def test_numeric_passthrough(self) -> None:
        assert parse_duration(1000) == 1000
        assert parse_duration(0) == 0
        assert parse_duration(12.5) == 12.5

    def test_forever(self) -> None:
        """Test that forever pins data indefinitely."""
        assert parse_duration("forever") == math.inf
        assert parse_duration("Infinity") == math.inf
        assert parse_duration(math.inf) == math.inf

    def test_invalid_format(self) -> None:
        for value in ("invalid", "10x", "s10", "", "10", "-5s"):
            with pytest.raises(ValueError, match="Invalid duration"):
                parse_duration(value)

    def test_negative_number_rejected(self) -> None:
        with pytest.raises(ValueError, match="Invalid duration"):
            parse_duration(-1)

    def test_bool_rejected(self) -> None:
        with pytest.raises(TypeError):
            parse_duration(True)

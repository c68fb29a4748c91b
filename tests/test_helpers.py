"""Tests for the request-value parsers."""

from datetime import date, datetime
from decimal import Decimal

import pytest

from recurring_billing.utils.helpers import parse_bool, parse_date_input, parse_decimal


class TestParseBool:
    @pytest.mark.parametrize("raw", [True, 1, "1", "true", "Yes", " on "])
    def test_true(self, raw):
        assert parse_bool(raw) is True

    @pytest.mark.parametrize("raw", [False, 0, "0", "false", "NO", "off", ""])
    def test_false(self, raw):
        assert parse_bool(raw) is False

    def test_none_uses_default(self):
        assert parse_bool(None) is False
        assert parse_bool(None, default=True) is True

    def test_garbage(self):
        with pytest.raises(ValueError):
            parse_bool("maybe")


class TestParseDateInput:
    def test_iso(self):
        assert parse_date_input("2025-02-28") == date(2025, 2, 28)

    def test_datetime_truncated(self):
        assert parse_date_input(datetime(2025, 2, 28, 13, 5)) == date(2025, 2, 28)

    def test_empty(self):
        assert parse_date_input("") is None

    def test_invalid(self):
        with pytest.raises(ValueError, match="YYYY-MM-DD"):
            parse_date_input("28/02/2025")


class TestParseDecimal:
    def test_float_keeps_printed_value(self):
        assert parse_decimal(0.1) == Decimal("0.1")

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_decimal("ten")

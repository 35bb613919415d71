"""
Tests for raw cell normalization and typed coercion.
"""

from datetime import date, datetime
from decimal import Decimal

import pytest

from dashimport.cell_values import (
    BlankToken,
    as_date,
    as_decimal,
    as_decimal_or_zero,
    as_flag,
    as_int,
    as_text,
    clean_vat,
    normalize_cell,
    parse_date_text,
    parse_number,
    split_multi_value,
)
from dashimport.errors import ParseError

BLANKS = ("(blank)", "n/a", "-")


# =============================================================================
# NORMALIZATION
# =============================================================================

class TestNormalizeCell:
    """The syntactic pass applied while reading a sheet."""

    def test_empty_values(self):
        assert normalize_cell(None) is None
        assert normalize_cell(float("nan")) is None
        assert normalize_cell("   ") is None

    def test_numbers_become_decimal(self):
        assert normalize_cell(5) == Decimal("5")
        assert normalize_cell(0.1) == Decimal("0.1")
        assert normalize_cell("1,234.50") == Decimal("1234.50")

    def test_dates(self):
        assert normalize_cell(datetime(2025, 1, 10, 0, 0)) == date(2025, 1, 10)
        assert normalize_cell("10/01/2025") == date(2025, 1, 10)

    def test_blank_tokens_are_kept_as_sentinels(self):
        value = normalize_cell("(Blank)", BLANKS)
        assert isinstance(value, BlankToken)
        assert value == "(Blank)"
        assert as_text(value) is None

    def test_dash_is_blank_not_negative(self):
        assert isinstance(normalize_cell("-", BLANKS), BlankToken)

    def test_booleans(self):
        assert normalize_cell(True) == "Yes"
        assert normalize_cell(False) == "No"

    def test_plain_text(self):
        assert normalize_cell("  Widget Build ") == "Widget Build"

    def test_keep_text(self):
        assert normalize_cell("007", keep_text=True) == "007"
        assert normalize_cell("007") == Decimal("7")
        assert isinstance(normalize_cell("n/a", ("n/a",), keep_text=True), BlankToken)


class TestParseNumber:
    """Accounting-style numbers."""

    @pytest.mark.parametrize("text,expected", [
        ("1,234", Decimal("1234")),
        ("$1,200.50", Decimal("1200.50")),
        ("(300)", Decimal("-300")),
        ("-5", Decimal("-5")),
        ("12%", Decimal("0.12")),
        (".5", Decimal("0.5")),
    ])
    def test_accepted(self, text, expected):
        assert parse_number(text) == expected

    @pytest.mark.parametrize("text", ["abc", "12,34", "1.2.3", "", "$"])
    def test_rejected(self, text):
        assert parse_number(text) is None


class TestParseDateText:
    """Text dates found in exported sheets."""

    def test_formats(self):
        assert parse_date_text("2025-01-10") == date(2025, 1, 10)
        assert parse_date_text("10/1/25") == date(2025, 1, 10)
        assert parse_date_text("10-Jan-2025") == date(2025, 1, 10)
        assert parse_date_text("10 January 2025") == date(2025, 1, 10)

    def test_invalid(self):
        assert parse_date_text("31/02/2025") is None
        assert parse_date_text("someday") is None


# =============================================================================
# TYPED COERCION
# =============================================================================

class TestTypedCoercion:
    """as_* helpers used by the sheet importers."""

    def test_as_decimal(self):
        assert as_decimal(Decimal("3.5")) == Decimal("3.5")
        assert as_decimal(None) is None
        assert as_decimal(BlankToken("n/a")) is None
        with pytest.raises(ParseError) as exc:
            as_decimal("lots", "hours")
        assert exc.value.column == "hours"

    def test_as_decimal_or_zero(self):
        assert as_decimal_or_zero(None) == Decimal("0")

    def test_as_int(self):
        assert as_int(Decimal("4")) == 4
        with pytest.raises(ParseError):
            as_int(Decimal("4.5"))

    def test_as_date_accepts_excel_serials(self):
        assert as_date(Decimal("45667")) == date(2025, 1, 10)
        assert as_date(date(2025, 1, 10)) == date(2025, 1, 10)
        with pytest.raises(ParseError):
            as_date("not a date", "week_ending")

    def test_as_text_for_integral_decimal(self):
        assert as_text(Decimal("101")) == "101"
        assert as_text(Decimal("1.50")) == "1.5"

    def test_as_flag(self):
        assert as_flag("Yes") is True
        assert as_flag("no") is False
        assert as_flag(None) is False


class TestMultiValues:
    """SharePoint lookup values."""

    def test_split(self):
        assert split_multi_value("Alice;#12;#Bob") == ["Alice", "Bob"]
        assert split_multi_value("Alice; Bob") == ["Alice", "Bob"]
        assert split_multi_value(None) is None

    def test_clean_vat(self):
        assert clean_vat(";#Defence|f3a1-22") == "Defence"
        assert clean_vat(None) is None

"""
Cell Values

A raw cell is one of: str, Decimal, date, BlankToken or None.
normalize_cell() does the syntactic pass at parse time; the as_* helpers
turn raw cells into typed fields once a sheet importer knows what a
column means, raising ParseError for the row when a cell is malformed.
"""

import re
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Optional, Union

from .errors import ParseError


class BlankToken(str):
    """A sentinel such as "(blank)" or "n/a", kept verbatim."""


RawValue = Union[str, Decimal, date, BlankToken, None]

EXCEL_EPOCH = date(1899, 12, 30)
MIN_YEAR, MAX_YEAR = 1900, 2100
# Serial for 31 Dec 2100
MAX_EXCEL_SERIAL = 73415

_PLAIN_NUMBER = re.compile(r"^(?:\d{1,3}(?:,\d{3})+|\d+)?(?:\.\d+)?$")
_ISO_DATE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ]\d{1,2}:\d{2}(?::\d{2}(?:\.\d+)?)?)?$")
_AU_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2}|\d{4})$")
_NAMED_MONTH_DATE = re.compile(r"^(\d{1,2})[-\s]([A-Za-z]{3,9})[-\s](\d{2}|\d{4})$")
_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
_MULTI_VALUE_SEPARATORS = re.compile(r";#\d+;#|;#|;|,")


# ============================================================================
# Syntactic normalization (parser)
# ============================================================================

def parse_number(text: str) -> Optional[Decimal]:
    """Parse "1,234.50", "$1,200", "(300)", "-5" or "12%" (-> 0.12)."""
    s = text.strip()
    negative = False
    if s.startswith("(") and s.endswith(")"):
        negative = True
        s = s[1:-1].strip()
    if s.startswith("-"):
        negative = not negative
        s = s[1:].strip()
    if s.startswith("$"):
        s = s[1:].strip()
    percent = s.endswith("%")
    if percent:
        s = s[:-1].strip()
    if not s or not any(ch.isdigit() for ch in s) or not _PLAIN_NUMBER.match(s):
        return None
    try:
        value = Decimal(s.replace(",", ""))
    except InvalidOperation:
        return None
    if percent:
        value = value / 100
    return -value if negative else value


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    if not MIN_YEAR <= year <= MAX_YEAR:
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_date_text(text: str) -> Optional[date]:
    """Recognise ISO (YYYY-MM-DD), AU (D/M/YY or D/M/YYYY) and D-Mon-YYYY dates."""
    s = text.strip()
    match = _ISO_DATE.match(s)
    if match:
        return _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    match = _AU_DATE.match(s)
    if match:
        year = match.group(3)
        full_year = 2000 + int(year) if len(year) == 2 else int(year)
        return _safe_date(full_year, int(match.group(2)), int(match.group(1)))
    match = _NAMED_MONTH_DATE.match(s)
    if match:
        month = _MONTHS.get(match.group(2)[:3].lower())
        if month is None:
            return None
        year = match.group(3)
        full_year = 2000 + int(year) if len(year) == 2 else int(year)
        return _safe_date(full_year, month, int(match.group(1)))
    return None


def normalize_cell(value: Any, blank_tokens: Iterable[str] = (), keep_text: bool = False) -> RawValue:
    """
    Syntactic normalization of one cell. With keep_text, string cells are
    returned as written instead of being parsed as numbers or dates.
    """
    if value is None:
        return None
    if isinstance(value, float) and value != value:
        return None
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(repr(value))

    text = str(value).strip()
    if not text:
        return None
    if text.lower() in blank_tokens:
        return BlankToken(text)
    if keep_text:
        return text
    number = parse_number(text)
    if number is not None:
        return number
    parsed = parse_date_text(text)
    if parsed is not None:
        return parsed
    return text


# ============================================================================
# Typed coercion (sheet importers)
# ============================================================================

def is_blank(value: RawValue) -> bool:
    return value is None or isinstance(value, BlankToken)


def as_text(value: RawValue) -> Optional[str]:
    if is_blank(value):
        return None
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return str(int(value))
        return format(value.normalize(), "f")
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    return text or None


def as_decimal(value: RawValue, column: str = "") -> Optional[Decimal]:
    if is_blank(value):
        return None
    if isinstance(value, Decimal):
        return value
    raise ParseError(f"expected a number, got '{value}'", column or None)


def as_decimal_or_zero(value: RawValue, column: str = "") -> Decimal:
    number = as_decimal(value, column)
    return number if number is not None else Decimal("0")


def as_int(value: RawValue, column: str = "") -> Optional[int]:
    number = as_decimal(value, column)
    if number is None:
        return None
    if number != number.to_integral_value():
        raise ParseError(f"expected a whole number, got '{value}'", column or None)
    return int(number)


def excel_serial_to_date(serial: Decimal) -> Optional[date]:
    if serial < 1 or serial > MAX_EXCEL_SERIAL:
        return None
    return EXCEL_EPOCH + timedelta(days=int(serial))


def as_date(value: RawValue, column: str = "") -> Optional[date]:
    if is_blank(value):
        return None
    if isinstance(value, date):
        return value
    if isinstance(value, Decimal):
        parsed = excel_serial_to_date(value)
        if parsed is not None:
            return parsed
    raise ParseError(f"unrecognised date '{value}'", column or None)


def as_flag(value: RawValue, truthy: Iterable[str] = ("yes", "y", "true", "1")) -> bool:
    text = as_text(value)
    return text is not None and text.lower() in truthy


def split_multi_value(value: RawValue) -> Optional[List[str]]:
    """Split SharePoint-style multi-values ("A;#12;#B", "A;#B", "A; B")."""
    text = as_text(value)
    if text is None:
        return None
    parts = [part.strip() for part in _MULTI_VALUE_SEPARATORS.split(text)]
    return [part for part in parts if part] or None


def clean_vat(value: RawValue) -> Optional[str]:
    """Strip lookup noise from a VAT value: ";#GROWTH|f3a1..." -> "GROWTH"."""
    text = as_text(value)
    if text is None:
        return None
    vat = text.replace(";#", "")
    vat = re.sub(r"\|.*$", "", vat).strip()
    if vat.lower() == "growth":
        vat = "GROWTH"
    return vat or None

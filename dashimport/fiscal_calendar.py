"""
Fiscal Calendar

Financial years run 1 July - 30 June and are labelled "YY-YY"
(e.g. "24-25" for July 2024 - June 2025). Pure functions, no I/O.
"""

import re
from datetime import date
from typing import Iterable, List, Optional, Tuple

MONTH_LABELS = ["Jul", "Aug", "Sep", "Oct", "Nov", "Dec", "Jan", "Feb", "Mar", "Apr", "May", "Jun"]

FY_START_MONTH = 7

_LABEL_PATTERN = re.compile(r"^\s*(?:FY\s*)?(\d{2}|\d{4})\s*[-/]\s*(\d{2}|\d{4})\s*$", re.IGNORECASE)
_SHEET_FY_PATTERN = re.compile(r"FY\s*(\d{2}|\d{4})\s*[-/]\s*(\d{2}|\d{4})", re.IGNORECASE)


def fy_start_year(d: date) -> int:
    return d.year if d.month >= FY_START_MONTH else d.year - 1


def fy_label_for_start(start_year: int) -> str:
    return f"{start_year % 100:02d}-{(start_year + 1) % 100:02d}"


def fiscal_year(d: date) -> str:
    """FY label for a date; Jan-Jun belong to the FY that started the previous July."""
    return fy_label_for_start(fy_start_year(d))


def fy_month(d: date) -> int:
    """Month index within the FY, July = 1 ... June = 12."""
    return (d.month - FY_START_MONTH) % 12 + 1


def current_fy(as_of: Optional[date] = None) -> str:
    return fiscal_year(as_of or date.today())


def _start_year_from_parts(first: str, second: str) -> Optional[int]:
    start = int(first) if len(first) == 4 else 2000 + int(first)
    end = int(second) % 100
    if (start + 1) % 100 != end:
        return None
    return start


def parse_fy_label(text: Optional[str]) -> Optional[int]:
    """
    Parse an FY label into the calendar year the FY starts in.

    Accepts "24-25", "FY24-25", "FY 2024-25" and "2024/2025".
    Returns None for anything malformed.
    """
    if not text:
        return None
    match = _LABEL_PATTERN.match(str(text))
    if not match:
        return None
    return _start_year_from_parts(match.group(1), match.group(2))


def normalize_fy_label(text: Optional[str]) -> Optional[str]:
    start = parse_fy_label(text)
    return fy_label_for_start(start) if start is not None else None


def fy_from_sheet_name(sheet_name: str) -> Optional[str]:
    """Extract an FY hint such as "Resource Plan Opps FY25-26" -> "25-26"."""
    match = _SHEET_FY_PATTERN.search(sheet_name or "")
    if not match:
        return None
    start = _start_year_from_parts(match.group(1), match.group(2))
    return fy_label_for_start(start) if start is not None else None


def fy_bounds(label: str) -> Tuple[date, date]:
    start = parse_fy_label(label)
    if start is None:
        raise ValueError(f"Malformed FY label '{label}'")
    return date(start, 7, 1), date(start + 1, 6, 30)


def elapsed_months(fy_label: str, as_of: Optional[date] = None) -> int:
    """
    Months of the FY reached as of a date, clamped to [0, 12].

    0 before the FY starts (or for a malformed label), 12 once it has ended,
    otherwise the FY month index of as_of (July = 1, so the running month counts).
    """
    start = parse_fy_label(fy_label)
    if start is None:
        return 0
    today = as_of or date.today()
    fy_start, fy_end = date(start, 7, 1), date(start + 1, 6, 30)
    if today < fy_start:
        return 0
    if today > fy_end:
        return 12
    return fy_month(today)


def available_fy_options(observed: Iterable[Optional[str]], as_of: Optional[date] = None) -> List[str]:
    """Observed FY labels plus the current FY, deduplicated and sorted ascending."""
    labels = {current_fy(as_of)}
    for raw in observed:
        label = normalize_fy_label(raw)
        if label:
            labels.add(label)
    return sorted(labels)

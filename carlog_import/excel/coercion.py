from __future__ import annotations

import math
import re
from datetime import date, datetime, timedelta
from typing import Any

import pandas as pd

"""Cell value coercion (import) and display formatting (export).

Each ``parse_*`` function takes a raw spreadsheet cell (text, number, boolean,
datetime or blank) and returns a typed value or None. None means "absent":
blank input and malformed input are deliberately collapsed into the same
result, so a malformed cell simply leaves its field unset. None of these
functions raise on bad input.

The ``format_*`` functions are the inverse used by the workbook writer.
"""

__all__ = [
    "EXCEL_EPOCH",
    "is_blank",
    "parse_excel_date",
    "parse_boolean",
    "parse_number",
    "coerce_text",
    "format_date_for_export",
    "format_boolean",
    "format_currency",
]

# Day 0 of spreadsheet serial dates. One day before the nominal 1899-12-31
# so that serials line up with the 1900 leap-year bug of the producing app.
EXCEL_EPOCH = date(1899, 12, 30)
LEGACY_LEAP_SERIAL = 60
LEGACY_LEAP_DAY = "1900-02-29"

TRUE_STRINGS = frozenset({"y", "yes", "true", "1"})
FALSE_STRINGS = frozenset({"n", "no", "false", "0"})

_NON_NUMERIC = re.compile(r"[^0-9.\-]")
_LEADING_FLOAT = re.compile(r"^-?(\d+\.?\d*|\.\d+)")


def is_blank(value: Any) -> bool:
    """True for None, NaN/NaT and strings that are empty after trimming."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _is_bool(value: Any) -> bool:
    return pd.api.types.is_bool(value)


def _is_number(value: Any) -> bool:
    return pd.api.types.is_number(value) and not _is_bool(value)


def _serial_to_date(serial: float) -> str | None:
    if math.isnan(serial) or math.isinf(serial) or serial < 0:
        return None
    days = math.floor(serial)
    if days == LEGACY_LEAP_SERIAL:
        return LEGACY_LEAP_DAY
    try:
        return (EXCEL_EPOCH + timedelta(days=days)).isoformat()
    except OverflowError:
        return None


def parse_excel_date(value: Any) -> str | None:
    """Coerce a cell to a ``YYYY-MM-DD`` calendar date.

    Accepts date strings in any format the general parser understands,
    spreadsheet serial numbers (day 0 = 1899-12-30) and datetime cells.
    Time of day is discarded. Strings carrying a UTC offset are converted to
    UTC first; naive strings keep their calendar date.
    """
    if is_blank(value) or _is_bool(value):
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        parsed = pd.to_datetime(value.strip(), errors="coerce")
        if pd.isna(parsed):
            return None
        if parsed.tzinfo is not None:
            parsed = parsed.tz_convert("UTC")
        return parsed.date().isoformat()
    if _is_number(value):
        return _serial_to_date(float(value))
    return None


def parse_boolean(value: Any) -> bool | None:
    """Tri-state boolean: True, False or None (absent, never False)."""
    if is_blank(value):
        return None
    if _is_bool(value):
        return bool(value)
    if isinstance(value, str):
        lower = value.strip().lower()
        if lower in TRUE_STRINGS:
            return True
        if lower in FALSE_STRINGS:
            return False
        return None
    if _is_number(value):
        return value != 0
    return None


def parse_number(value: Any) -> float | None:
    """Permissive number parsing.

    Strings are stripped of everything except digits, '.' and '-' before
    parsing the leading numeric prefix, so "$1,234.50" -> 1234.5 and
    "12 pcs" -> 12.0.
    """
    if is_blank(value) or _is_bool(value):
        return None
    if _is_number(value):
        number = float(value)
        return None if math.isnan(number) else number
    if isinstance(value, str):
        cleaned = _NON_NUMERIC.sub("", value)
        match = _LEADING_FLOAT.match(cleaned)
        if match is None:
            return None
        return float(match.group(0))
    return None


def coerce_text(value: Any) -> str | None:
    """Trimmed text for free-text fields.

    Integral floats (how pandas reads whole numbers in sparse columns) lose
    their ``.0`` and midnight datetimes render as plain dates.
    """
    if is_blank(value):
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        if value.hour == value.minute == value.second == 0 and value.microsecond == 0:
            return value.date().isoformat()
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    return text or None


def format_date_for_export(value: Any) -> str:
    if is_blank(value):
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value)
    if "T" in text:
        return text.split("T")[0]
    return text


def format_boolean(value: Any) -> str:
    """Y / N / blank."""
    if is_blank(value):
        return ""
    if _is_bool(value):
        return "Y" if value else "N"
    if isinstance(value, str):
        lower = value.strip().lower()
        if lower in TRUE_STRINGS:
            return "Y"
        if lower in FALSE_STRINGS:
            return "N"
    return str(value)


def format_currency(value: Any) -> str:
    """Dollar formatting with thousands separators, e.g. ``-$1,234.50``."""
    number = parse_number(value)
    if number is None:
        return ""
    sign = "-" if number < 0 else ""
    return f"{sign}${abs(number):,.2f}"

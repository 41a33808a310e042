"""
Locale-aware parsing of money strings and dates.

``parse_amount`` understands US ("$1,234.56"), European ("1.234,56 €"),
accounting negatives ("(123.45)") and ISO currency codes. ``parse_date``
turns Excel serials, date objects and the common textual layouts into ISO
``YYYY-MM-DD`` strings.
"""

import math
import re
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from dateutil import parser as date_parser


MAX_AMOUNT = 1_000_000_000
MIN_YEAR, MAX_YEAR = 1900, 2100

CURRENCY_CODES = {
    "USD", "EUR", "GBP", "JPY", "INR", "CHF", "CAD", "AUD", "NZD", "CNY",
    "KRW", "SEK", "NOK", "DKK", "PLN", "CZK", "HUF", "MXN", "BRL", "ZAR",
    "SGD", "HKD", "AED", "SAR", "RUB", "TRY",
}
_CURRENCY_SYMBOLS = re.compile(r"[$€£¥₹₩₽₺¢\s'’ ]")
_CURRENCY_CODE = re.compile(r"(?i)^(?:%s)|(?:%s)$" % ("|".join(CURRENCY_CODES), "|".join(CURRENCY_CODES)))
_NUMERIC = re.compile(r"^[0-9.,]+$")

_EXCEL_EPOCH = date(1899, 12, 30)
# two unrelated defaults: a field missing from the input shows up as a disagreement
_FILL_A = datetime(2000, 1, 1)
_FILL_B = datetime(2001, 2, 2)

_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "sept": 9, "oct": 10, "nov": 11, "dec": 12,
}
_MONTH_RE = r"(jan|feb|mar|apr|may|jun|jul|aug|sept|sep|oct|nov|dec)[a-z]*\.?"

_ISO = re.compile(r"^(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})(?:[T\s].*)?$")
_NUMERIC_DATE = re.compile(r"^(\d{1,2})[-/.](\d{1,2})[-/.](\d{2}|\d{4})(?:[T\s].*)?$")
_MONTH_FIRST = re.compile(r"^%s[\s-]+(\d{1,2})(?:st|nd|rd|th)?,?[\s-]+(\d{4})$" % _MONTH_RE, re.I)
_DAY_FIRST = re.compile(r"^(\d{1,2})(?:st|nd|rd|th)?[\s-]+%s,?[\s-]+(\d{4})$" % _MONTH_RE, re.I)


def parse_amount(value: Any, signed: bool = True) -> Optional[float]:
    """Parse a money value. Returns None for anything that is not a finite amount.

    With ``signed=False`` the absolute value is returned, which is what the
    matcher wants; spreadsheet ingest keeps the sign to tell credits apart.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
        if not math.isfinite(number) or abs(number) > MAX_AMOUNT:
            return None
        return number if signed else abs(number)

    s = str(value).strip()
    if not s:
        return None

    s = _CURRENCY_SYMBOLS.sub("", s)
    s = _CURRENCY_CODE.sub("", s)
    negative = False
    if s.startswith("(") and s.endswith(")"):
        negative = True
        s = s[1:-1]
    s = _CURRENCY_CODE.sub("", _CURRENCY_SYMBOLS.sub("", s))
    if s.startswith("-"):
        negative = True
        s = s[1:]
    elif s.endswith("-"):
        negative = True
        s = s[:-1]
    if not s or not _NUMERIC.match(s):
        return None

    has_comma, has_dot = "," in s, "." in s
    if has_comma and has_dot:
        if s.rfind(",") > s.rfind("."):
            s = s.replace(".", "").replace(",", ".")
        else:
            s = s.replace(",", "")
    elif has_comma:
        if re.search(r",\d{2}$", s) and s.count(",") == 1:
            s = s.replace(",", ".")
        else:
            s = s.replace(",", "")
    elif s.count(".") > 1:
        s = s.replace(".", "")

    try:
        number = float(Decimal(s))
    except (InvalidOperation, ValueError):
        return None
    if not math.isfinite(number) or number > MAX_AMOUNT:
        return None
    if negative and signed:
        return -number
    return number


def _iso(y: int, m: int, d: int) -> Optional[str]:
    if not MIN_YEAR <= y <= MAX_YEAR:
        return None
    try:
        return date(y, m, d).isoformat()
    except ValueError:
        return None


def _expand_year(y: int) -> int:
    return 2000 + y if y < 100 else y


def parse_date(value: Any) -> Optional[str]:
    """Parse a date-like value into ``YYYY-MM-DD``, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _iso(value.year, value.month, value.day)
    if isinstance(value, date):
        return _iso(value.year, value.month, value.day)
    if isinstance(value, (int, float)):
        if not math.isfinite(value) or not 20000 <= value <= 60000:
            return None
        d = _EXCEL_EPOCH + timedelta(days=int(value))
        return _iso(d.year, d.month, d.day)

    s = str(value).strip()
    if not s:
        return None

    m = _ISO.match(s)
    if m:
        return _iso(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    m = _NUMERIC_DATE.match(s)
    if m:
        a, b, y = int(m.group(1)), int(m.group(2)), _expand_year(int(m.group(3)))
        # a first number above 12 can only be a day
        if a > 12:
            return _iso(y, b, a)
        return _iso(y, a, b)

    m = _MONTH_FIRST.match(s)
    if m:
        return _iso(int(m.group(3)), _MONTHS[m.group(1).lower()], int(m.group(2)))
    m = _DAY_FIRST.match(s)
    if m:
        return _iso(int(m.group(3)), _MONTHS[m.group(2).lower()], int(m.group(1)))

    if not re.search(r"\d", s):
        return None
    try:
        first = date_parser.parse(s, default=_FILL_A)
        second = date_parser.parse(s, default=_FILL_B)
    except (ValueError, OverflowError):
        return None
    if first.date() != second.date():
        return None
    return _iso(first.year, first.month, first.day)


def days_between(a: Optional[str], b: Optional[str]) -> Optional[int]:
    """Signed day delta ``a - b`` for two ISO dates, None if either is missing."""
    if not a or not b:
        return None
    try:
        return (date.fromisoformat(a[:10]) - date.fromisoformat(b[:10])).days
    except ValueError:
        return None

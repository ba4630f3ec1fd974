"""
Value Parsers — normalize raw amount and date strings scraped from the
fundraising listing and round tables.

Both parsers are pure: the same input always yields the same output.
parse_date takes an optional `today` so the "current year" default can be pinned.
"""

import re
from datetime import date, datetime, timezone
from typing import Optional


# ── Amounts ──────────────────────────────────────

PLACEHOLDER_VALUES = {"", "--", "-", "n/a", "undisclosed"}

CURRENCY_SYMBOLS = "$¥￥€£"

MAGNITUDES = {
    "k": 1e3,
    "thousand": 1e3,
    "m": 1e6,
    "mn": 1e6,
    "million": 1e6,
    "b": 1e9,
    "bn": 1e9,
    "billion": 1e9,
    "万": 1e4,
    "亿": 1e8,
}

_AMOUNT_RE = re.compile(
    r"^(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>[a-z]+|万|亿)?$",
    re.IGNORECASE,
)


def parse_amount(raw: Optional[str]) -> Optional[float]:
    """
    Convert a raw amount like '$25 M', '$1.2 million' or '¥5万' into a float.
    Returns None for empty strings, the source's '--' placeholder,
    and anything that doesn't look like a number with an optional magnitude.
    """
    if raw is None:
        return None
    text = raw.strip()
    if text.lower() in PLACEHOLDER_VALUES:
        return None

    for symbol in CURRENCY_SYMBOLS:
        text = text.replace(symbol, "")
    text = text.replace(",", "").replace("\u00a0", " ").strip()

    match = _AMOUNT_RE.match(text)
    if not match:
        return None

    value = float(match.group("value"))
    unit = match.group("unit")
    if not unit:
        return value

    multiplier = MAGNITUDES.get(unit.lower())
    if multiplier is None:
        return None
    return value * multiplier


# ── Dates ────────────────────────────────────────

MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

# (pattern, has_day, has_year, numeric_month)
_DATE_PATTERNS = [
    (re.compile(r"^(?P<mon>[A-Za-z]{3,9})\.? (?P<day>\d{1,2}), (?P<year>\d{4})$"), True, True, False),
    (re.compile(r"^(?P<mon>[A-Za-z]{3,9})\.?,? (?P<year>\d{4})$"), False, True, False),
    (re.compile(r"^(?P<mon>[A-Za-z]{3,9})\.? (?P<day>\d{1,2})$"), True, False, False),
    (re.compile(r"^(?P<year>\d{4})-(?P<mon>\d{1,2})-(?P<day>\d{1,2})$"), True, True, True),
    (re.compile(r"^(?P<mon>\d{1,2})-(?P<day>\d{1,2})$"), True, False, True),
]


def _month_number(token: str, numeric: bool) -> Optional[int]:
    if numeric:
        return int(token)
    return MONTHS.get(token[:3].lower())


def parse_date(raw: Optional[str], today: Optional[date] = None) -> Optional[int]:
    """
    Convert a listing date into epoch milliseconds (UTC midnight).

    Accepted shapes:
        'Aug 01, 2023'   full date
        'May, 2018'      month + year, day defaults to 01
        'Oct 21'         month + day, year defaults to the current year
        '2023-08-01'     ISO date
        '08-01'          month-day, year defaults to the current year
    Anything else returns None.
    """
    if not raw:
        return None
    text = re.sub(r"\s+", " ", raw.strip())
    current_year = (today or datetime.now(timezone.utc).date()).year

    for pattern, has_day, has_year, numeric in _DATE_PATTERNS:
        match = pattern.match(text)
        if not match:
            continue
        month = _month_number(match.group("mon"), numeric)
        if month is None:
            return None
        day = int(match.group("day")) if has_day else 1
        year = int(match.group("year")) if has_year else current_year
        try:
            parsed = datetime(year, month, day, tzinfo=timezone.utc)
        except ValueError:
            return None
        return int(parsed.timestamp() * 1000)

    return None

"""
Keepsake - Event-Date Extractor
Finds a calendar date mentioned in memory text
"""

import re
from datetime import date
from typing import Optional, List

MONTHS = {
    "january": 1, "jan": 1,
    "february": 2, "feb": 2,
    "march": 3, "mar": 3,
    "april": 4, "apr": 4,
    "may": 5,
    "june": 6, "jun": 6,
    "july": 7, "jul": 7,
    "august": 8, "aug": 8,
    "september": 9, "sep": 9, "sept": 9,
    "october": 10, "oct": 10,
    "november": 11, "nov": 11,
    "december": 12, "dec": 12,
}

_MONTH = r"(jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?|sept?(?:ember)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)\.?"
_DAY = r"(\d{1,2})(?:st|nd|rd|th)?"

ISO_DATE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
MONTH_DAY_YEAR = re.compile(rf"\b{_MONTH}\s+{_DAY},?\s+(\d{{4}})\b", re.IGNORECASE)
DAY_MONTH_YEAR = re.compile(rf"\b{_DAY}\s+(?:of\s+)?{_MONTH},?\s+(\d{{4}})\b", re.IGNORECASE)
MONTH_DAY = re.compile(rf"\b{_MONTH}\s+{_DAY}\b(?!,?\s+\d{{4}})", re.IGNORECASE)
US_NUMERIC = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{2}|\d{4})\b")


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _iso(m, ref: date) -> Optional[date]:
    return _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))


def _month_day_year(m, ref: date) -> Optional[date]:
    return _safe_date(int(m.group(3)), MONTHS[m.group(1).lower().rstrip(".")], int(m.group(2)))


def _day_month_year(m, ref: date) -> Optional[date]:
    return _safe_date(int(m.group(3)), MONTHS[m.group(2).lower().rstrip(".")], int(m.group(1)))


def _month_day(m, ref: date) -> Optional[date]:
    return _safe_date(ref.year, MONTHS[m.group(1).lower().rstrip(".")], int(m.group(2)))


def _us_numeric(m, ref: date) -> Optional[date]:
    year = int(m.group(3))
    if year < 100:
        year += 2000
    return _safe_date(year, int(m.group(1)), int(m.group(2)))


# Most specific formats first
_EXTRACTORS: List[tuple] = [
    (ISO_DATE, _iso),
    (MONTH_DAY_YEAR, _month_day_year),
    (DAY_MONTH_YEAR, _day_month_year),
    (US_NUMERIC, _us_numeric),
    (MONTH_DAY, _month_day),
]


def extract_event_date(text: str, reference: Optional[date] = None) -> Optional[date]:
    """
    Return the first valid calendar date found in ``text``.

    Recognizes ISO dates, "February 16, 2025", "16 February 2025",
    "2/16/2025" and "February 16th" (year taken from ``reference``).
    Impossible dates such as "February 30, 2025" are ignored.

    Args:
        text: Memory content
        reference: Date supplying the year for month-day mentions (default today)

    Returns:
        The date, or None
    """
    if not text:
        return None

    ref = reference or date.today()
    for pattern, build in _EXTRACTORS:
        for match in pattern.finditer(text):
            found = build(match, ref)
            if found is not None:
                return found
    return None


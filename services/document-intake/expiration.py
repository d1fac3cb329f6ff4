"""Expiration date detection in raw recognized text.

Looks for expiration-related keywords and inspects the text right after
each occurrence for a date, in pattern priority order:

1. YYYY-MM-DD / YYYY/MM/DD
2. MM/DD/YYYY (also '.' and '-' separated)
3. MM/YY or MM/YYYY (read as the last day of that month)
4. Month-name dates ("March 15, 2027", "15 Mar 2027")

Full dates in US or month-name form are only accepted when they lie in
the future: on cards and policies a past date next to these keywords is
almost always an issue or effective date.
"""

import calendar
import logging
import re
from collections.abc import Callable
from datetime import date

from models import EnhancedExtractedData, ExtractedField, FieldType, TemporalMatch

logger = logging.getLogger(__name__)

EXPIRATION_FIELD = "expirationDate"
WINDOW_SIZE = 100

# Order matters: earlier keywords win
EXPIRATION_KEYWORDS: tuple[str, ...] = (
    "expiration date",
    "expiration",
    "expiry date",
    "expiry",
    "expires on",
    "expires",
    "effective date",
    "effective thru",
    "effective end",
    "effective until",
    "valid until",
    "valid thru",
    "valid through",
    "valid to",
    "end date",
    "exp date",
    "exp",
)

_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
_MONTH_NAME = r"(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\.?"

_YEAR_FIRST = re.compile(
    r"(?<!\d)(\d{4})[/\-](0?[1-9]|1[0-2])[/\-](0?[1-9]|[12]\d|3[01])(?!\d)"
)
_MONTH_FIRST = re.compile(
    r"(?<!\d)(?<!\d[/.\-])(0?[1-9]|1[0-2])[/.\-](0?[1-9]|[12]\d|3[01])[/.\-](\d{4})(?!\d)"
)
# Must not be a fragment of a longer date such as 01/01/2020
_MONTH_YEAR = re.compile(
    r"(?<!\d)(?<!\d[/.\-])(0?[1-9]|1[0-2])[/\-](20\d{2}|\d{2})(?![\d/.\-]*\d)"
)
_NAMED_MONTH_FIRST = re.compile(
    r"\b" + _MONTH_NAME + r"\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4})(?!\d)",
    re.IGNORECASE,
)
_NAMED_DAY_FIRST = re.compile(
    r"(?<!\d)(\d{1,2})\s+" + _MONTH_NAME + r",?\s+(\d{4})(?!\d)",
    re.IGNORECASE,
)


def _iso(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _year_first(m: re.Match, today: date) -> str | None:
    parsed = _iso(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    return parsed.isoformat() if parsed else None


def _month_first(m: re.Match, today: date) -> str | None:
    parsed = _iso(int(m.group(3)), int(m.group(1)), int(m.group(2)))
    if parsed is None or parsed <= today:
        return None
    return parsed.isoformat()


def _month_year(m: re.Match, today: date) -> str | None:
    month = int(m.group(1))
    year_text = m.group(2)
    year = int("20" + year_text if len(year_text) == 2 else year_text)
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, last_day).isoformat()


def _named_month_first(m: re.Match, today: date) -> str | None:
    month = _MONTHS[m.group(1).lower()]
    parsed = _iso(int(m.group(3)), month, int(m.group(2)))
    if parsed is None or parsed <= today:
        return None
    return parsed.isoformat()


def _named_day_first(m: re.Match, today: date) -> str | None:
    month = _MONTHS[m.group(2).lower()]
    parsed = _iso(int(m.group(3)), month, int(m.group(1)))
    if parsed is None or parsed <= today:
        return None
    return parsed.isoformat()


_PATTERNS: tuple[tuple[re.Pattern, Callable[[re.Match, date], str | None]], ...] = (
    (_YEAR_FIRST, _year_first),
    (_MONTH_FIRST, _month_first),
    (_MONTH_YEAR, _month_year),
    (_NAMED_MONTH_FIRST, _named_month_first),
    (_NAMED_DAY_FIRST, _named_day_first),
)


def _match_window(window: str, today: date) -> TemporalMatch | None:
    for pattern, normalize in _PATTERNS:
        m = pattern.search(window)
        if m is None:
            continue
        normalized = normalize(m, today)
        if normalized is not None:
            return TemporalMatch(raw_text=m.group(0), normalized_iso_date=normalized)
    return None


def find_expiration(text: str, today: date | None = None) -> TemporalMatch | None:
    """Locate the first acceptable expiration date after a keyword."""
    if not text:
        return None
    today = today or date.today()

    for keyword in EXPIRATION_KEYWORDS:
        for occurrence in re.finditer(re.escape(keyword), text, re.IGNORECASE):
            window = text[occurrence.end():occurrence.end() + WINDOW_SIZE]
            found = _match_window(window, today)
            if found is not None:
                logger.debug(
                    "expiration date %s found after keyword %r",
                    found.normalized_iso_date, keyword,
                )
                return found
    return None


def extract_expiration_date(text: str, today: date | None = None) -> str | None:
    """Return the expiration date in the text as YYYY-MM-DD, if any."""
    found = find_expiration(text, today)
    return found.normalized_iso_date if found else None


def with_expiration_date(
    data: EnhancedExtractedData,
    text: str,
    confidence: float,
    today: date | None = None,
) -> EnhancedExtractedData:
    """Copy of ``data`` with an expiration date taken from raw text.

    Returns ``data`` itself when it already carries an expiration value or
    the text holds no acceptable date.
    """
    existing = data.fields.get(EXPIRATION_FIELD)
    if existing is not None and existing.value not in (None, ""):
        return data

    found = find_expiration(text, today)
    if found is None:
        return data

    field = ExtractedField(
        name=EXPIRATION_FIELD,
        label=(existing.label if existing else None) or "Expiration Date",
        value=found.normalized_iso_date,
        confidence=confidence,
        field_type=FieldType.DATE,
    )
    dates = list(data.all_dates_found)
    if found.raw_text not in dates:
        dates.append(found.raw_text)

    logger.info("Expiration date recovered from recognized text: %s", found.normalized_iso_date)
    return data.model_copy(
        update={
            "fields": {**data.fields, EXPIRATION_FIELD: field},
            "all_dates_found": dates,
        }
    )

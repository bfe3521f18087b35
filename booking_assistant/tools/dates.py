"""Normalisation of user-supplied dates into ``YYYY-MM-DD``.

Handles the phrasings people actually type into a chat: relative days
("tomorrow", "next Friday", "next week on Monday"), numeric dates and
month-name dates with or without a year.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta

_WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
_WEEKDAY_PATTERN = r"(mon|tues|wednes|thurs|fri|satur|sun)day"

# Formats tried in order; entries without %Y get the year inferred.
_FULL_FORMATS = [
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%B %d %Y",
    "%d %B %Y",
    "%b %d %Y",
    "%d %b %Y",
]
_YEARLESS_FORMATS = [
    "%B %d",
    "%d %B",
    "%b %d",
    "%d %b",
]

AMBIGUOUS_MESSAGE = (
    "Could not parse date. Please provide date in a clearer format like:\n"
    '- Exact date (e.g., "June 19 2024" or "2024-06-19")\n'
    '- Relative date (e.g., "next Wednesday", "tomorrow")\n'
    '- This/next week (e.g., "this Monday", "next week Wednesday")'
)


def _weekday_index(prefix: str) -> int:
    return _WEEKDAYS.index(f"{prefix}day")


def _parse_relative(text: str, today: date) -> date | None:
    if text == "today":
        return today
    if text == "tomorrow":
        return today + timedelta(days=1)
    if text == "day after tomorrow":
        return today + timedelta(days=2)

    match = re.search(rf"next week\s+(?:on\s+)?{_WEEKDAY_PATTERN}", text)
    if match:
        monday_next_week = today - timedelta(days=today.weekday()) + timedelta(weeks=1)
        return monday_next_week + timedelta(days=_weekday_index(match.group(1)))

    match = re.search(rf"next\s+{_WEEKDAY_PATTERN}", text)
    if match:
        target = _weekday_index(match.group(1))
        days_ahead = (target - today.weekday()) % 7 or 7
        return today + timedelta(days=days_ahead)

    match = re.search(rf"this\s+{_WEEKDAY_PATTERN}", text)
    if match:
        target = _weekday_index(match.group(1))
        return today + timedelta(days=(target - today.weekday()) % 7)

    if "next week" in text:
        return today + timedelta(weeks=1)

    return None


def _parse_absolute(text: str, today: date) -> date | None:
    cleaned = re.sub(r"(\d)(st|nd|rd|th)\b", r"\1", text.replace(",", " "))
    cleaned = " ".join(cleaned.split())

    for fmt in _FULL_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue

    for fmt in _YEARLESS_FORMATS:
        try:
            # 2000 is a leap year, so "Feb 29" parses.
            parsed = datetime.strptime(f"{cleaned} 2000", f"{fmt} %Y").date()
        except ValueError:
            continue
        for year in (today.year, today.year + 1):
            try:
                candidate = parsed.replace(year=year)
            except ValueError:
                continue
            if candidate >= today:
                return candidate
        return None

    return None


def normalize_booking_date(date_str: str, *, today: date | None = None) -> dict:
    """Return ``{"date", "isValid", "wasAmbiguous"[, "message"]}`` for *date_str*."""
    today = today or date.today()
    text = (date_str or "").strip().lower()

    parsed = _parse_relative(text, today) or _parse_absolute(text, today)
    if parsed is not None:
        return {"date": parsed.isoformat(), "isValid": True, "wasAmbiguous": False}

    return {
        "date": date_str,
        "isValid": False,
        "wasAmbiguous": True,
        "message": AMBIGUOUS_MESSAGE,
    }

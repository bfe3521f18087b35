"""Field validation for booking details.

Backs the ``validateBookingDetails`` function and the per-platform
required-field check that runs before any booking attempt.
"""

from __future__ import annotations

import re

from booking_assistant.models import BookingDetails, BookingResult, Platform, missing_fields_result

# RFC 5322-ish pattern; covers the vast majority of real-world emails
# without requiring an external dependency.
_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")

# Field name -> label shown to the model when it is missing.
FIELD_LABELS: dict[str, str] = {
    "name": "Name",
    "email": "Email",
    "date": "Date",
    "time": "Time",
    "phone": "Phone Number",
    "address": "Address",
}

REQUIRED_FIELDS: dict[Platform, list[str]] = {
    Platform.CALENDLY: ["name", "email", "date", "time"],
    Platform.OPENTABLE: ["name", "email", "phone"],
    Platform.HOUSECALLPRO: ["name", "email"],
}


def _validate_email(email: str | None) -> str | None:
    """Return an error message if *email* looks invalid, else ``None``."""
    if not email or not email.strip():
        return "No email address was provided. Please ask the user for their email."
    email = email.strip()
    if not _EMAIL_RE.match(email):
        return (
            f'"{email}" does not look like a valid email address. '
            "Please ask the user to double-check and provide a corrected email."
        )
    return None


def validate_booking_details(
    name: str | None = None,
    email: str | None = None,
    date: str | None = None,
    time: str | None = None,
    platform: str | None = None,
) -> dict:
    """Check name, email, date and time formats.

    Returns ``{"isValid": bool, "errors": [...]}``.
    """
    errors: list[str] = []

    if not name or len(name.strip()) < 2:
        errors.append("Name must be at least 2 characters long")

    email_error = _validate_email(email)
    if email_error:
        errors.append(email_error)

    if not date or not _DATE_RE.match(date):
        errors.append("Date must be in YYYY-MM-DD format")

    if not time or not _TIME_RE.match(time):
        errors.append("Time must be in HH:MM format")

    if platform is not None and platform not in {p.value for p in Platform}:
        errors.append(f"Unknown booking platform: {platform}")

    return {"isValid": not errors, "errors": errors}


def check_required_fields(details: BookingDetails) -> BookingResult | None:
    """Return a ``missingFields`` result if *details* can't be booked yet."""
    platform = details.platform or Platform.CALENDLY
    missing = details.missing(REQUIRED_FIELDS[platform])
    if not missing:
        return None
    return missing_fields_result([FIELD_LABELS.get(name, name) for name in missing])

"""Housecall Pro adapter.

Service requests are booked directly: there is no slot to reserve first.
Form fields the page marks as required but that we cannot fill from the
booking details come back as ``missingFields`` so the model can ask.
"""

from __future__ import annotations

import logging
import re

from booking_assistant.config import HOUSECALLPRO_BOOKING_URL, PAGE_TIMEOUT_MS
from booking_assistant.models import (
    AvailabilityResult,
    BookingDetails,
    BookingResult,
    MissingField,
    Platform,
)
from booking_assistant.platforms.base import OtpChannel, PlatformAdapter
from booking_assistant.services.browser import BrowserAgent

logger = logging.getLogger(__name__)

_SUCCESS_TEXT = re.compile(r"Your booking was successful", re.IGNORECASE)


def _form_values(details: BookingDetails) -> dict[str, str]:
    """Map the booking details onto the form's field labels."""
    first, _, last = (details.name or "").strip().partition(" ")
    values = {
        "First name": first,
        "Last name": last.strip(),
        "Email": details.email or "",
        "Mobile phone": details.phone or "",
        "Address": details.address or "",
        "Notes": details.service_details or "",
    }
    values.update(details.custom_fields)
    return {label: value for label, value in values.items() if value}


class HousecallProAdapter(PlatformAdapter):
    platform = Platform.HOUSECALLPRO
    requires_availability_check = False

    def __init__(self, booking_url: str = HOUSECALLPRO_BOOKING_URL):
        self._booking_url = booking_url

    async def check_availability(
        self, resource: BrowserAgent | None, details: BookingDetails,
    ) -> AvailabilityResult:
        return AvailabilityResult(
            success=True,
            message="Housecall Pro takes service requests directly; no availability check is needed.",
            is_ready_to_confirm=True,
        )

    async def _select_service(self, page, details: BookingDetails) -> bool:
        for wanted in (details.service_type, details.service_category):
            if not wanted:
                continue
            option = page.get_by_text(wanted, exact=False)
            if await option.count():
                await option.first.click()
                return True
        return False

    async def book_appointment(
        self,
        resource: BrowserAgent | None,
        details: BookingDetails,
        otp: OtpChannel | None = None,
    ) -> BookingResult:
        page = resource.page
        await page.goto(self._booking_url, timeout=PAGE_TIMEOUT_MS, wait_until="domcontentloaded")

        if not await self._select_service(page, details):
            return BookingResult(
                success=False,
                message="Which service do you need? Please describe the category and type of work.",
                missing_fields=[MissingField(label="Service Details")],
            )
        await page.get_by_role("button", name=re.compile(r"^(Next|Continue)", re.IGNORECASE)).first.click()

        for label, value in _form_values(details).items():
            field = page.get_by_label(label, exact=False)
            if await field.count():
                await field.first.fill(value)

        missing: list[MissingField] = []
        for field in await page.locator("input[required], textarea[required]").all():
            if await field.input_value():
                continue
            label = await field.get_attribute("aria-label") or await field.get_attribute("name") or "Field"
            missing.append(MissingField(label=label))
        if missing:
            return BookingResult(
                success=False, message="Additional information needed", missing_fields=missing,
            )

        await page.get_by_role("button", name=re.compile(r"Book", re.IGNORECASE)).last.click()
        await page.get_by_text(_SUCCESS_TEXT).first.wait_for(timeout=PAGE_TIMEOUT_MS)
        await resource.screenshot("hcp-confirmation")
        return BookingResult(success=True, message="Booking confirmed successfully")

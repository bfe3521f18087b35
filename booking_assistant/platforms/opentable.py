"""OpenTable adapter.

Booking a table ends on a verification step: OpenTable texts or emails a
code that the guest has to type in.  ``book_appointment`` drives the form
up to that step, asks for the code through the ``OtpChannel`` and then
finishes the reservation with :meth:`OpenTableAdapter.submit_otp`.
"""

from __future__ import annotations

import logging
import re
from datetime import date

from booking_assistant.config import OPENTABLE_RESTAURANT_URL, PAGE_TIMEOUT_MS
from booking_assistant.models import AvailabilityResult, BookingDetails, BookingResult, Platform
from booking_assistant.platforms.base import OtpChannel, PlatformAdapter, closest_time, minutes_of_day
from booking_assistant.services.browser import BrowserAgent

logger = logging.getLogger(__name__)

DEFAULT_PARTY_SIZE = 4

_SLOT_SELECTOR = '[data-test="time-slots"] a, [data-test="time-slots"] button'
_OTP_INPUT_SELECTORS = (
    '[data-test="verification-code-input"]',
    "#emailVerificationCode",
    'input[inputmode="numeric"]',
    'input[placeholder*="verification" i]',
    'input[placeholder*="code" i]',
    'input[aria-label*="code" i]',
)
_OTP_SUBMIT_SELECTORS = (
    '[data-test="verify-code-button"]',
    'button[type="submit"]',
    'button:has-text("Verify")',
    'button:has-text("Submit")',
    'button:has-text("Confirm")',
)
_SUCCESS_SELECTORS = (
    '[data-test="confirmation-page"]',
    'text="Reservation confirmed"',
    'text="Booking confirmed"',
)
_ERROR_SELECTORS = (
    '[data-test="error-message"]',
    "#emailVerificationCode-error",
    'text="Invalid code"',
    'text="Verification failed"',
)


async def _first_present(page, selectors):
    for selector in selectors:
        handle = await page.query_selector(selector)
        if handle is not None:
            return handle
    return None


def _split_name(full_name: str) -> tuple[str, str]:
    first, _, last = full_name.strip().partition(" ")
    return first, last.strip() or first


class OpenTableAdapter(PlatformAdapter):
    platform = Platform.OPENTABLE
    requires_availability_check = True
    requires_otp = True

    def __init__(self, restaurant_url: str = OPENTABLE_RESTAURANT_URL):
        self._restaurant_url = restaurant_url

    async def check_availability(
        self, resource: BrowserAgent | None, details: BookingDetails,
    ) -> AvailabilityResult:
        page = resource.page
        party_size = details.party_size or DEFAULT_PARTY_SIZE
        await page.goto(self._restaurant_url, timeout=PAGE_TIMEOUT_MS, wait_until="domcontentloaded")

        await page.select_option('[data-test="party-size-picker"] select', str(party_size))
        day = date.fromisoformat(details.date or "")
        await page.fill('[data-test="date-picker"] input', day.strftime("%m/%d/%Y"))
        minutes = minutes_of_day(details.time)
        if minutes is not None:
            await page.select_option(
                '[data-test="time-picker"] select', f"{minutes // 60:02d}:{minutes % 60:02d}",
            )
        await page.get_by_role("button", name=re.compile(r"Find a time", re.IGNORECASE)).click()

        try:
            await page.wait_for_selector(_SLOT_SELECTOR, timeout=15_000)
        except Exception:
            return AvailabilityResult(
                success=False,
                message=f"No tables are available for {party_size} on {details.date}. Please try another time.",
                available_slots=[],
            )
        offered = [t.strip() for t in await page.locator(_SLOT_SELECTOR).all_inner_texts() if t.strip()]
        await resource.screenshot("opentable-times")

        selected = closest_time(details.time, offered)
        return AvailabilityResult(
            success=True,
            message=f"Available times found: {', '.join(offered)}",
            available_slots=offered,
            selected_time=selected,
            is_ready_to_confirm=selected is not None,
        )

    async def book_appointment(
        self,
        resource: BrowserAgent | None,
        details: BookingDetails,
        otp: OtpChannel | None = None,
    ) -> BookingResult:
        if otp is None:
            raise ValueError("OpenTable bookings need a verification code channel")
        page = resource.page
        slot = details.selected_time or details.time or ""
        await page.locator(_SLOT_SELECTOR).filter(has_text=slot).first.click()

        first_name, last_name = _split_name(details.name or "")
        await page.fill("#firstName", first_name)
        await page.fill("#lastName", last_name)
        await page.fill("#phoneNumber", details.phone or "")
        await page.fill("#email", details.email or "")
        notes = " ".join(filter(None, [details.occasion, details.special_requests]))
        if notes:
            await page.fill("#specialRequests", notes)
        await page.get_by_role("button", name=re.compile(r"Complete reservation", re.IGNORECASE)).click()

        if await _first_present(page, _OTP_INPUT_SELECTORS) is None:
            await page.wait_for_selector(_OTP_INPUT_SELECTORS[0], timeout=PAGE_TIMEOUT_MS)
        logger.info("OpenTable verification step reached; waiting for the code")
        code = await otp.request_code()
        return await self.submit_otp(resource, details, code)

    async def submit_otp(
        self, resource: BrowserAgent, details: BookingDetails, code: str,
    ) -> BookingResult:
        page = resource.page
        field = await _first_present(page, _OTP_INPUT_SELECTORS)
        if field is None:
            return BookingResult(success=False, message="The verification field is no longer on the page.")
        await field.fill(code)
        button = await _first_present(page, _OTP_SUBMIT_SELECTORS)
        if button is not None:
            await button.click()
        await page.wait_for_timeout(2000)
        await resource.screenshot("opentable-confirmation")

        error = await _first_present(page, _ERROR_SELECTORS)
        if error is not None:
            text = (await error.text_content() or "").strip()
            return BookingResult(
                success=False, message=text or "The verification code was not accepted.",
            )
        if await _first_present(page, _SUCCESS_SELECTORS) is None:
            return BookingResult(
                success=False, message="Could not determine whether the reservation was confirmed.",
            )
        return BookingResult(
            success=True,
            message=f"Your table for {details.party_size or DEFAULT_PARTY_SIZE} on {details.date} at "
            f"{details.selected_time or details.time} is confirmed.",
            is_ready_to_confirm=True,
        )

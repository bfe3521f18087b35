"""Contract between the orchestrator and the per-platform adapters.

An adapter knows how to drive one booking site.  The orchestrator only
cares about what the adapter *declares* (does it need an availability
check, an OTP, can it answer without a browser?) and the three calls
below.  ``resource`` is ``None`` when the adapter is asked to use its
direct-API fast path; a result with ``error`` set means "that did not
work, give me a browser".
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Protocol

from booking_assistant.models import AvailabilityResult, BookingDetails, BookingResult, Platform
from booking_assistant.services.browser import BrowserAgent


class OtpChannel(Protocol):
    """What a booking attempt uses to ask the user for a one-time passcode."""

    async def request_code(self) -> str:
        """Signal that a code is needed and wait until one is submitted."""
        ...


class PlatformAdapter(ABC):
    platform: Platform
    requires_availability_check: bool = True
    requires_otp: bool = False
    supports_direct_api: bool = False

    @abstractmethod
    async def check_availability(
        self, resource: BrowserAgent | None, details: BookingDetails,
    ) -> AvailabilityResult:
        """Look for a slot matching *details* and leave it selected."""

    @abstractmethod
    async def book_appointment(
        self,
        resource: BrowserAgent | None,
        details: BookingDetails,
        otp: OtpChannel | None = None,
    ) -> BookingResult:
        """Complete the booking.  OTP platforms call ``otp.request_code()``."""

    async def submit_otp(
        self, resource: BrowserAgent, details: BookingDetails, code: str,
    ) -> BookingResult:
        """Enter *code* on the page and report the final outcome.

        Only an OTP platform's own :meth:`book_appointment` calls this,
        with the code ``otp.request_code()`` returned.  The orchestrator
        never calls it: submitted codes reach the parked attempt through
        the :class:`OtpChannel`.
        """
        raise NotImplementedError(f"{self.platform.value} does not use one-time passcodes")


_TIME_RE = re.compile(r"^\s*(\d{1,2})(?::(\d{2}))?\s*([ap]\.?m\.?)?\s*$", re.IGNORECASE)


def minutes_of_day(value: str | None) -> int | None:
    """Parse "14:30", "2:30 PM" or "2pm" into minutes after midnight."""
    match = _TIME_RE.match(value or "")
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2) or 0)
    meridiem = (match.group(3) or "").lower().replace(".", "")
    if meridiem == "pm" and hour < 12:
        hour += 12
    elif meridiem == "am" and hour == 12:
        hour = 0
    if hour > 23 or minute > 59:
        return None
    return hour * 60 + minute


def closest_time(requested: str | None, offered: list[str]) -> str | None:
    """Pick the offered slot nearest to *requested*."""
    if not offered:
        return None
    target = minutes_of_day(requested)
    if target is None:
        return offered[0]
    return min(offered, key=lambda slot: abs((minutes_of_day(slot) or 0) - target))

"""Calendly adapter.

The direct API (``resource is None``) answers both availability and
booking through ``CalendlyClient``.  If that fails for any reason the
result carries ``error`` and the orchestrator retries with a browser on
the public scheduling page.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

import httpx

from booking_assistant.config import BOOKING_TIMEZONE, CALENDLY_SCHEDULING_URL, PAGE_TIMEOUT_MS
from booking_assistant.models import AvailabilityResult, BookingDetails, BookingResult, Platform
from booking_assistant.platforms.base import OtpChannel, PlatformAdapter, closest_time, minutes_of_day
from booking_assistant.services.browser import BrowserAgent
from booking_assistant.services.calendly_client import CalendlyAPIError, get_calendly_client

logger = logging.getLogger(__name__)

_TIME_BUTTON = 'button[data-container="time-button"]'
_CONFIRMED_TEXT = re.compile(r"You are scheduled", re.IGNORECASE)


def _local_start(details: BookingDetails, tz: ZoneInfo) -> datetime:
    minutes = minutes_of_day(details.time)
    if minutes is None or not details.date:
        raise ValueError(f"Unusable date/time: {details.date!r} {details.time!r}")
    day = date.fromisoformat(details.date)
    return datetime.combine(day, time(minutes // 60, minutes % 60), tzinfo=tz)


def _display(dt: datetime) -> str:
    return dt.strftime("%I:%M %p").lstrip("0")


class CalendlyAdapter(PlatformAdapter):
    platform = Platform.CALENDLY
    requires_availability_check = True
    supports_direct_api = True

    def __init__(
        self,
        scheduling_url: str = CALENDLY_SCHEDULING_URL,
        timezone: str = BOOKING_TIMEZONE,
        client_factory=get_calendly_client,
    ):
        self._scheduling_url = scheduling_url
        self._tz = ZoneInfo(timezone)
        self._client_factory = client_factory

    # ── Direct API ───────────────────────────────────────────────────

    async def _api_available_slots(self, details: BookingDetails) -> tuple[datetime, list[datetime]]:
        client = self._client_factory()
        event_type_uri = await client.find_event_type_uri(self._scheduling_url)
        start = _local_start(details, self._tz)
        day_start = start.replace(hour=0, minute=0)
        # Calendly rejects a start_time in the past.
        range_start = max(day_start, datetime.now(self._tz) + timedelta(minutes=1))
        range_end = day_start + timedelta(days=1)
        slots = await client.get_available_times(
            event_type_uri, range_start.isoformat(), range_end.isoformat(),
        )
        offered = [
            datetime.fromisoformat(s["start_time"].replace("Z", "+00:00")).astimezone(self._tz)
            for s in slots
            if s.get("status") == "available"
        ]
        return start, offered

    async def _api_check(self, details: BookingDetails) -> AvailabilityResult:
        start, offered = await self._api_available_slots(details)
        labels = [_display(slot) for slot in offered]
        if start in offered:
            return AvailabilityResult(
                success=True,
                message=f"{_display(start)} on {details.date} is available.",
                available_slots=labels,
                selected_time=_display(start),
                is_ready_to_confirm=True,
            )
        if not offered:
            return AvailabilityResult(
                success=False,
                message=f"There are no open slots on {details.date}. Please suggest another day.",
                available_slots=[],
            )
        return AvailabilityResult(
            success=True,
            message=f"{details.time} is not available on {details.date}. Other times: {', '.join(labels)}",
            available_slots=labels,
            selected_time=closest_time(details.time, labels),
            is_ready_to_confirm=False,
        )

    async def _api_book(self, details: BookingDetails) -> BookingResult:
        client = self._client_factory()
        event_type_uri = await client.find_event_type_uri(self._scheduling_url)
        start = _local_start(details, self._tz)
        invitee = await client.create_invitee(
            event_type_uri,
            start.astimezone(ZoneInfo("UTC")).strftime("%Y-%m-%dT%H:%M:%SZ"),
            name=details.name or "",
            email=details.email or "",
            timezone=self._tz.key,
        )
        return BookingResult(
            success=True,
            message=f"Scheduled on {details.date} at {_display(start)}",
            confirmation=invitee.get("uri"),
        )

    # ── Adapter contract ─────────────────────────────────────────────

    async def check_availability(
        self, resource: BrowserAgent | None, details: BookingDetails,
    ) -> AvailabilityResult:
        if resource is None:
            try:
                return await self._api_check(details)
            except (CalendlyAPIError, httpx.HTTPError, ValueError, KeyError) as exc:
                logger.warning("Calendly API availability check failed: %s", exc)
                return AvailabilityResult(
                    success=False, message="Calendly API unavailable", error=str(exc),
                )
        return await self._browser_check(resource, details)

    async def book_appointment(
        self,
        resource: BrowserAgent | None,
        details: BookingDetails,
        otp: OtpChannel | None = None,
    ) -> BookingResult:
        if resource is None:
            try:
                return await self._api_book(details)
            except (CalendlyAPIError, httpx.HTTPError, ValueError, KeyError) as exc:
                logger.warning("Calendly API booking failed: %s", exc)
                return BookingResult(success=False, message="Calendly API unavailable", error=str(exc))
        return await self._browser_book(resource, details)

    # ── Browser path ─────────────────────────────────────────────────

    async def _open_day(self, resource: BrowserAgent, details: BookingDetails) -> list[str]:
        page = resource.page
        day = date.fromisoformat(details.date or "")
        url = f"{self._scheduling_url}?month={day:%Y-%m}&date={day:%Y-%m-%d}"
        await page.goto(url, timeout=PAGE_TIMEOUT_MS, wait_until="domcontentloaded")
        try:
            await page.wait_for_selector(_TIME_BUTTON, timeout=15_000)
        except Exception:
            return []
        return [t.strip() for t in await page.locator(_TIME_BUTTON).all_inner_texts()]

    async def _browser_check(self, resource: BrowserAgent, details: BookingDetails) -> AvailabilityResult:
        offered = await self._open_day(resource, details)
        if not offered:
            return AvailabilityResult(
                success=False,
                message=f"There are no open slots on {details.date}. Please suggest another day.",
                available_slots=[],
            )
        wanted = minutes_of_day(details.time)
        exact = next((slot for slot in offered if minutes_of_day(slot) == wanted), None)
        if exact is None:
            return AvailabilityResult(
                success=True,
                message=f"{details.time} is not available on {details.date}. Other times: {', '.join(offered)}",
                available_slots=offered,
                selected_time=closest_time(details.time, offered),
                is_ready_to_confirm=False,
            )
        await resource.page.get_by_role("button", name=exact).first.click()
        return AvailabilityResult(
            success=True,
            message=f"{exact} on {details.date} is available.",
            available_slots=offered,
            selected_time=exact,
            is_ready_to_confirm=True,
        )

    async def _browser_book(self, resource: BrowserAgent, details: BookingDetails) -> BookingResult:
        page = resource.page
        slot = details.selected_time or details.time or ""
        if await page.locator('input[name="full_name"]').count() == 0:
            # The availability step left the slot selected; otherwise select it again.
            if await page.locator(_TIME_BUTTON).count() == 0:
                await self._open_day(resource, details)
            await page.get_by_role("button", name=slot).first.click()
            await page.get_by_role("button", name=re.compile(r"^Next")).first.click()

        await page.fill('input[name="full_name"]', details.name or "")
        await page.fill('input[name="email"]', details.email or "")
        await page.get_by_role("button", name=re.compile(r"Schedule Event", re.IGNORECASE)).click()
        await page.get_by_text(_CONFIRMED_TEXT).first.wait_for(timeout=PAGE_TIMEOUT_MS)
        return BookingResult(success=True, message=f"Scheduled on {details.date} at {slot}")

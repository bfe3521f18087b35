"""Routes automation functions through a connection's booking session.

One ``BookingFlow`` belongs to one connection.  It decides when a session
(and therefore a browser) is needed, drives the session through its
states for ``checkAvailability``, ``bookAppointment`` and ``submitOTP``,
and turns adapter failures into ``AdapterError`` after releasing the
session.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable
from typing import Any

from booking_assistant.config import AGENT_SESSION_TIMEOUT_SECONDS
from booking_assistant.errors import (
    AdapterError,
    BookingAssistantError,
    ConnectionClosedError,
    ProtocolViolationError,
)
from booking_assistant.models import (
    AvailabilityResult,
    BookingDetails,
    BookingResult,
    Platform,
    SessionState,
)
from booking_assistant.platforms.base import PlatformAdapter
from booking_assistant.services.metrics import metrics
from booking_assistant.services.otp import OtpRace
from booking_assistant.services.session import BookingSession, ResourceFactory
from booking_assistant.tools.validation import check_required_fields

logger = logging.getLogger(__name__)


class BookingFlow:
    def __init__(
        self,
        connection_id: str,
        adapters: dict[Platform, PlatformAdapter],
        resource_factory: ResourceFactory,
        *,
        session_timeout: float = AGENT_SESSION_TIMEOUT_SECONDS,
    ):
        self.connection_id = connection_id
        self.session: BookingSession | None = None
        self.closed = False
        self._adapters = adapters
        self._resource_factory = resource_factory
        self._session_timeout = session_timeout
        self._acquiring: asyncio.Task | None = None

    # ── Session management ───────────────────────────────────────────

    def _adapter(self, platform: Platform | None) -> PlatformAdapter:
        adapter = self._adapters.get(platform) if platform else None
        if adapter is None:
            raise ProtocolViolationError(f"Unsupported booking platform: {platform}")
        return adapter

    def _forget(self, session: BookingSession) -> None:
        if self.session is session:
            self.session = None

    async def _open_session(self) -> BookingSession:
        if self.closed:
            raise ConnectionClosedError("The connection is closed.")
        # Kept on the flow so shutdown can release a browser whose turn was cancelled mid-start.
        self._acquiring = asyncio.ensure_future(
            BookingSession.acquire(
                self.connection_id,
                self._resource_factory,
                idle_timeout=self._session_timeout,
                on_closed=self._forget,
            )
        )
        try:
            session = await asyncio.shield(self._acquiring)
        except Exception:
            self._acquiring = None
            raise
        self._acquiring = None
        if self.closed:
            await session.close("connection closed")
            raise ConnectionClosedError("The connection is closed.")
        self.session = session
        return session

    async def _session_for(self, platform: Platform) -> BookingSession:
        """Reuse the live session for *platform*, or start a new one."""
        session = self.session
        if session is not None and (session.state.is_terminal or session.closed):
            await session.close("terminal session replaced")
            session = None
        if session is not None and session.details.platform not in (None, platform):
            await session.close(f"switched to {platform.value}")
            session = None
        if session is None:
            return await self._open_session()
        logger.info("[%s] Reusing session (state=%s)", self.connection_id, session.state.value)
        session.touch()
        return session

    def _ensure_not_busy(self) -> None:
        session = self.session
        if session is None:
            return
        if session.otp_race is not None and session.otp_race.awaiting_code:
            raise ProtocolViolationError(
                "A booking is waiting for its verification code. Please submit the code first."
            )
        if session.state is SessionState.BOOKING:
            raise ProtocolViolationError("A booking is already in progress for this conversation.")

    async def _guarded(
        self, session: BookingSession, platform: Platform, operation: str, pending: Awaitable[Any],
    ) -> Any:
        """Await an adapter step; on failure move to ``error`` and release."""
        t0 = time.perf_counter()
        try:
            result = await pending
        except BookingAssistantError:
            raise
        except Exception as exc:
            metrics.record_failure(
                "automation", f"{platform.value} {operation}", error_type=type(exc).__name__,
                latency_ms=(time.perf_counter() - t0) * 1000,
            )
            logger.exception("[%s] %s adapter call failed", self.connection_id, platform.value)
            session.transition(SessionState.ERROR)
            session.otp_race = None
            await session.snapshot("error")
            await session.close("adapter error")
            raise AdapterError(
                f"Something went wrong while talking to {platform.value}. Please try again.",
                platform=platform.value,
            ) from exc
        metrics.record_success(
            "automation", f"{platform.value} {operation}", latency_ms=(time.perf_counter() - t0) * 1000,
        )
        return result

    # ── checkAvailability ────────────────────────────────────────────

    async def check_availability(self, details: BookingDetails) -> AvailabilityResult:
        adapter = self._adapter(details.platform)
        if not adapter.requires_availability_check:
            return await adapter.check_availability(None, details)

        if adapter.supports_direct_api and self.session is None:
            result = await adapter.check_availability(None, details)
            if not result.needs_fallback:
                return result
            logger.info("[%s] %s API unavailable, using the browser", self.connection_id, adapter.platform.value)

        self._ensure_not_busy()
        session = await self._session_for(adapter.platform)
        session.details.merge(details)
        return await self._check_in_session(session, adapter)

    async def _check_in_session(self, session: BookingSession, adapter: PlatformAdapter) -> AvailabilityResult:
        session.transition(SessionState.CHECKING)
        result: AvailabilityResult = await self._guarded(
            session,
            adapter.platform,
            "check_availability",
            session.call(adapter.check_availability(session.resource, session.details)),
        )
        if result.success and result.is_ready_to_confirm:
            session.transition(SessionState.AWAITING_CONFIRMATION)
            session.details.merge(
                BookingDetails(selected_time=result.selected_time, is_ready_to_confirm=True),
            )
            session.touch()
        else:
            await session.close("slot not ready to confirm")
        return result

    # ── bookAppointment ──────────────────────────────────────────────

    async def book_appointment(self, details: BookingDetails) -> BookingResult:
        known = self.session.details.model_copy(deep=True) if self.session else BookingDetails()
        incomplete = check_required_fields(known.merge(details))
        if incomplete is not None:
            return incomplete

        adapter = self._adapter(details.platform)
        if adapter.supports_direct_api and self.session is None:
            result = await adapter.book_appointment(None, details)
            if not result.needs_fallback:
                return result
            logger.info("[%s] %s API unavailable, using the browser", self.connection_id, adapter.platform.value)

        self._ensure_not_busy()
        session = await self._session_for(adapter.platform)
        session.details.merge(details)

        if session.state is SessionState.IDLE and adapter.requires_availability_check:
            availability = await self._check_in_session(session, adapter)
            if session.state is not SessionState.AWAITING_CONFIRMATION:
                return BookingResult(
                    success=False,
                    message=availability.message,
                    selected_time=availability.selected_time,
                    is_ready_to_confirm=False,
                )

        session.transition(SessionState.BOOKING)
        if adapter.requires_otp:
            race = OtpRace()
            session.otp_race = race
            attempt = session.spawn(adapter.book_appointment(session.resource, session.details, otp=race))
            result = await self._guarded(session, adapter.platform, "book_appointment", race.start(attempt))
        else:
            result = await self._guarded(
                session,
                adapter.platform,
                "book_appointment",
                session.call(adapter.book_appointment(session.resource, session.details)),
            )
        return await self._finish_booking(session, result)

    async def _finish_booking(self, session: BookingSession, result: BookingResult) -> BookingResult:
        if result.needs_otp:
            session.transition(SessionState.AWAITING_CONFIRMATION)
            session.touch()
            return result
        session.otp_race = None
        if result.success:
            session.transition(SessionState.COMPLETED)
            await session.close("booking completed")
        else:
            session.transition(SessionState.ERROR)
            await session.close("booking failed")
        return result

    # ── submitOTP ────────────────────────────────────────────────────

    async def submit_otp(self, code: str) -> BookingResult:
        session = self.session
        race = session.otp_race if session is not None else None
        if race is None or not race.awaiting_code:
            raise ProtocolViolationError("There is no booking waiting for a verification code.")
        platform = session.details.platform or Platform.OPENTABLE
        session.transition(SessionState.BOOKING)
        session.touch()
        result = await self._guarded(session, platform, "submit_otp", race.submit(code))
        return await self._finish_booking(session, result)

    # ── Teardown ─────────────────────────────────────────────────────

    async def cancel(self, reason: str) -> bool:
        """Tear down the current session, if any.  Returns whether one existed."""
        session = self.session
        if session is None:
            return False
        await session.close(reason)
        return True

    async def shutdown(self, reason: str = "connection closed") -> None:
        self.closed = True
        acquiring, self._acquiring = self._acquiring, None
        if acquiring is not None:
            try:
                session = await acquiring
            except Exception:
                logger.debug("[%s] Browser start failed during shutdown", self.connection_id, exc_info=True)
            else:
                await session.close(reason)
        await self.cancel(reason)

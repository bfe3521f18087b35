"""Verification-code race for platforms that confirm bookings by OTP.

The booking attempt runs as its own task.  Partway through it may call
:meth:`OtpRace.request_code`, which raises the "needs a code" signal and
parks the attempt until :meth:`OtpRace.submit` hands a code over.  The
orchestrator waits on whichever happens first: the signal or the attempt
finishing on its own.  The attempt is never discarded; it is always
awaited later, either by ``submit`` or by ``abandon`` during teardown.
"""

from __future__ import annotations

import asyncio
import logging

from booking_assistant.errors import OtpAbandonedError, ProtocolViolationError
from booking_assistant.models import BookingResult

logger = logging.getLogger(__name__)

NEEDS_OTP_MESSAGE = (
    "A verification code has been sent to the guest. "
    "Please ask the user for the code and call submitOTP with it."
)


class OtpRace:
    """One booking attempt and its (optional) verification step."""

    def __init__(self) -> None:
        self._needs_code = asyncio.Event()
        self._code: asyncio.Future[str] | None = None
        self._attempt: asyncio.Task[BookingResult] | None = None
        self._abandoned = False

    # ── Attempt side ─────────────────────────────────────────────────

    async def request_code(self) -> str:
        """Signal that a code is needed and wait for :meth:`submit`."""
        if self._abandoned:
            raise OtpAbandonedError("verification abandoned before it was requested")
        if self._code is not None:
            raise RuntimeError("request_code() may only be called once per attempt")
        self._code = asyncio.get_running_loop().create_future()
        self._needs_code.set()
        return await self._code

    # ── Orchestrator side ────────────────────────────────────────────

    @property
    def awaiting_code(self) -> bool:
        """True while the attempt is parked on a code nobody has submitted yet."""
        return (
            self._code is not None
            and not self._code.done()
            and self._attempt is not None
            and not self._attempt.done()
        )

    async def start(self, attempt: asyncio.Task[BookingResult]) -> BookingResult:
        """Race *attempt* against the code signal.

        Cancelling the caller does not cancel *attempt*.
        """
        if self._attempt is not None:
            raise RuntimeError("an OTP race can only be started once")
        self._attempt = attempt
        signal = asyncio.ensure_future(self._needs_code.wait())
        try:
            done, _ = await asyncio.wait({attempt, signal}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            signal.cancel()

        if attempt in done:
            # Finished without ever asking for a code: its result is final.
            return attempt.result()
        logger.info("Booking attempt is waiting for a verification code")
        return BookingResult(
            success=False, needs_otp=True, is_ready_to_confirm=False, message=NEEDS_OTP_MESSAGE,
        )

    async def submit(self, code: str) -> BookingResult:
        """Hand *code* to the parked attempt and return its final result."""
        if not self.awaiting_code:
            raise ProtocolViolationError("There is no booking waiting for a verification code.")
        self._code.set_result(code)
        return await asyncio.shield(self._attempt)

    async def abandon(self) -> None:
        """Unblock the attempt with ``OtpAbandonedError`` and wait for it to end."""
        self._abandoned = True
        if self._code is not None and not self._code.done():
            self._code.set_exception(OtpAbandonedError("verification abandoned"))
        if self._attempt is None:
            return
        try:
            await asyncio.shield(self._attempt)
        except OtpAbandonedError:
            pass
        except Exception:
            logger.debug("Abandoned booking attempt ended with an error", exc_info=True)

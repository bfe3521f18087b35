"""Tests for the verification-code race."""

from __future__ import annotations

import asyncio

import pytest

from booking_assistant.errors import OtpAbandonedError, ProtocolViolationError
from booking_assistant.models import BookingResult
from booking_assistant.services.otp import OtpRace


class TestSignalFirst:
    @pytest.mark.asyncio
    async def test_needs_otp_returned_while_attempt_waits(self):
        race = OtpRace()

        async def attempt():
            code = await race.request_code()
            return BookingResult(success=True, message=f"confirmed with {code}")

        task = asyncio.ensure_future(attempt())
        result = await race.start(task)

        assert result.needs_otp is True
        assert result.success is False
        assert race.awaiting_code
        assert not task.done()

        final = await race.submit("123456")
        assert final.success is True
        assert final.message == "confirmed with 123456"
        assert not race.awaiting_code

    @pytest.mark.asyncio
    async def test_second_request_is_rejected(self):
        race = OtpRace()

        async def attempt():
            await race.request_code()
            await race.request_code()

        task = asyncio.ensure_future(attempt())
        await race.start(task)
        with pytest.raises(RuntimeError):
            await race.submit("1")


class TestAttemptFirst:
    @pytest.mark.asyncio
    async def test_result_without_signal_is_final(self):
        race = OtpRace()

        async def attempt():
            return BookingResult(success=True, message="no code needed")

        result = await race.start(asyncio.ensure_future(attempt()))
        assert result.success is True
        assert result.needs_otp is None
        assert not race.awaiting_code

    @pytest.mark.asyncio
    async def test_failure_without_signal_is_final(self):
        race = OtpRace()

        async def attempt():
            return BookingResult(success=False, message="no tables")

        result = await race.start(asyncio.ensure_future(attempt()))
        assert result.success is False
        assert not result.needs_otp

    @pytest.mark.asyncio
    async def test_exception_before_signal_propagates(self):
        race = OtpRace()

        async def attempt():
            raise RuntimeError("form changed")

        with pytest.raises(RuntimeError, match="form changed"):
            await race.start(asyncio.ensure_future(attempt()))


class TestProtocol:
    @pytest.mark.asyncio
    async def test_submit_without_pending_code(self):
        race = OtpRace()
        with pytest.raises(ProtocolViolationError):
            await race.submit("123456")

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_attempt(self):
        race = OtpRace()
        gate = asyncio.Event()

        async def attempt():
            await gate.wait()
            return BookingResult(success=True, message="done")

        task = asyncio.ensure_future(attempt())
        waiter = asyncio.ensure_future(race.start(task))
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        gate.set()
        assert (await task).success is True


class TestAbandon:
    @pytest.mark.asyncio
    async def test_abandon_unblocks_parked_attempt(self):
        race = OtpRace()
        seen = []

        async def attempt():
            try:
                await race.request_code()
            except OtpAbandonedError:
                seen.append("abandoned")
                raise

        task = asyncio.ensure_future(attempt())
        await race.start(task)
        await race.abandon()

        assert task.done()
        assert seen == ["abandoned"]
        assert not race.awaiting_code

    @pytest.mark.asyncio
    async def test_abandon_before_the_code_is_requested(self):
        race = OtpRace()
        gate = asyncio.Event()

        async def attempt():
            await gate.wait()
            return await race.request_code()

        task = asyncio.ensure_future(attempt())
        waiter = asyncio.ensure_future(race.start(task))
        await asyncio.sleep(0)
        waiter.cancel()
        abandoning = asyncio.ensure_future(race.abandon())
        await asyncio.sleep(0)
        gate.set()
        await abandoning
        assert isinstance(task.exception(), OtpAbandonedError)

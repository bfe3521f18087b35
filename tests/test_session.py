"""Tests for the booking session lifecycle."""

from __future__ import annotations

import asyncio

import pytest

from booking_assistant.errors import ConnectionClosedError, ResourceError
from booking_assistant.models import Platform, SessionState
from booking_assistant.services.metrics import metrics
from booking_assistant.services.session import BookingSession
from fakes import CountingFactory


async def _session(factory: CountingFactory, **kwargs) -> BookingSession:
    return await BookingSession.acquire("conn-test", factory, **kwargs)


class TestAcquire:
    @pytest.mark.asyncio
    async def test_acquire_starts_one_resource_in_idle(self):
        factory = CountingFactory()
        session = await _session(factory)
        assert session.state is SessionState.IDLE
        assert session.resource is factory.created[0]
        assert factory.live == 1
        await session.close("test")

    @pytest.mark.asyncio
    async def test_resource_error_propagates(self):
        factory = CountingFactory(error=ResourceError("no browser"))
        with pytest.raises(ResourceError):
            await _session(factory)
        assert factory.created == []


class TestTransitions:
    @pytest.mark.asyncio
    async def test_happy_path_transitions(self):
        session = await _session(CountingFactory())
        for state in (
            SessionState.CHECKING,
            SessionState.AWAITING_CONFIRMATION,
            SessionState.BOOKING,
            SessionState.COMPLETED,
        ):
            session.transition(state)
        assert session.state is SessionState.COMPLETED
        await session.close("test")

    @pytest.mark.asyncio
    async def test_cannot_book_from_checking(self):
        session = await _session(CountingFactory())
        session.transition(SessionState.CHECKING)
        with pytest.raises(RuntimeError):
            session.transition(SessionState.BOOKING)
        await session.close("test")

    @pytest.mark.asyncio
    async def test_any_state_can_fail(self):
        session = await _session(CountingFactory())
        session.transition(SessionState.CHECKING)
        session.transition(SessionState.ERROR)
        assert session.state.is_terminal
        await session.close("test")


class TestTeardown:
    @pytest.mark.asyncio
    async def test_close_releases_once(self):
        factory = CountingFactory()
        closed = []
        session = await _session(factory, on_closed=closed.append)
        released_before = metrics.counter("ResourcesReleased")

        await session.close("first")
        await session.close("second")

        assert factory.created[0].close_calls == 1
        assert session.resource is None
        assert closed == [session]
        assert metrics.counter("ResourcesReleased") - released_before == 1

    @pytest.mark.asyncio
    async def test_concurrent_closes_release_once(self):
        factory = CountingFactory()
        session = await _session(factory)
        await asyncio.gather(session.close("timer"), session.close("sweep"), session.close("disconnect"))
        assert factory.created[0].close_calls == 1

    @pytest.mark.asyncio
    async def test_snapshot_on_non_idle_teardown(self):
        factory = CountingFactory()
        session = await _session(factory)
        session.details.platform = Platform.OPENTABLE
        session.transition(SessionState.CHECKING)
        session.transition(SessionState.AWAITING_CONFIRMATION)
        await session.close("test")
        assert factory.created[0].screenshots == ["opentable-teardown"]

    @pytest.mark.asyncio
    async def test_no_snapshot_when_idle(self):
        factory = CountingFactory()
        session = await _session(factory)
        await session.close("test")
        assert factory.created[0].screenshots == []

    @pytest.mark.asyncio
    async def test_snapshot_failure_does_not_block_release(self):
        factory = CountingFactory()
        session = await _session(factory)
        factory.created[0].fail_screenshots = True
        session.transition(SessionState.CHECKING)
        await session.close("test")
        assert factory.created[0].close_calls == 1

    @pytest.mark.asyncio
    async def test_spawn_after_close_is_rejected(self):
        session = await _session(CountingFactory())
        await session.close("test")

        async def work():
            return 1

        with pytest.raises(ConnectionClosedError):
            session.spawn(work())


class TestInFlightCalls:
    @pytest.mark.asyncio
    async def test_teardown_waits_for_running_call(self):
        factory = CountingFactory()
        session = await _session(factory)
        gate = asyncio.Event()

        async def slow_call():
            await gate.wait()
            return "done"

        call = asyncio.ensure_future(session.call(slow_call()))
        await asyncio.sleep(0)
        closing = asyncio.ensure_future(session.close("disconnect"))
        await asyncio.sleep(0.01)
        assert factory.created[0].close_calls == 0

        gate.set()
        await closing
        assert await call == "done"
        assert factory.created[0].close_calls == 1

    @pytest.mark.asyncio
    async def test_cancelled_caller_leaves_call_running(self):
        factory = CountingFactory()
        session = await _session(factory)
        gate = asyncio.Event()
        finished = []

        async def slow_call():
            await gate.wait()
            finished.append(True)

        caller = asyncio.ensure_future(session.call(slow_call()))
        await asyncio.sleep(0)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        closing = asyncio.ensure_future(session.close("disconnect"))
        await asyncio.sleep(0.01)
        assert factory.created[0].close_calls == 0
        gate.set()
        await closing
        assert finished == [True]
        assert factory.created[0].close_calls == 1


class TestIdleTimer:
    @pytest.mark.asyncio
    async def test_timer_evicts_idle_session(self):
        factory = CountingFactory()
        closed = []
        session = await _session(factory, idle_timeout=0.02, on_closed=closed.append)
        await asyncio.sleep(0.1)
        assert session.closed
        assert closed == [session]
        assert factory.created[0].close_calls == 1

    @pytest.mark.asyncio
    async def test_touch_rearms_timer(self):
        factory = CountingFactory()
        session = await _session(factory, idle_timeout=0.1)
        await asyncio.sleep(0.06)
        session.touch()
        await asyncio.sleep(0.06)
        assert not session.closed
        await asyncio.sleep(0.1)
        assert session.closed

    @pytest.mark.asyncio
    async def test_close_cancels_timer(self):
        factory = CountingFactory()
        session = await _session(factory, idle_timeout=0.05)
        await session.close("disconnect")
        await asyncio.sleep(0.1)
        assert factory.created[0].close_calls == 1

    @pytest.mark.asyncio
    async def test_long_call_is_not_idle_time(self):
        factory = CountingFactory()
        session = await _session(factory, idle_timeout=0.05)

        async def slow():
            await asyncio.sleep(0.15)
            return "done"

        assert await session.call(slow()) == "done"
        assert not session.closed
        assert session.resource is factory.created[0]
        # The timer restarts once the call settles.
        await asyncio.sleep(0.03)
        assert not session.closed
        await asyncio.sleep(0.1)
        assert session.closed

    @pytest.mark.asyncio
    async def test_busy_only_while_a_call_runs(self):
        factory = CountingFactory()
        session = await _session(factory)
        gate = asyncio.Event()

        async def gated():
            await gate.wait()

        task = session.spawn(gated())
        assert session.busy
        gate.set()
        await task
        assert not session.busy
        await session.close("test")

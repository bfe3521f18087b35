"""Booking session: state machine and automation-resource lifecycle.

A session is created lazily by the first function call that needs a
browser and owns exactly one resource until it is torn down.  Teardown is
reachable from three places (the idle timer, the registry's sweep and the
connection going away) and runs at most once: later calls wait for the
first one to finish.

Lifecycle::

    idle ──► checking ──► awaiting_confirmation ──► booking ──► completed
    idle ──► booking                  (platform books without a check)
    awaiting_confirmation ──► checking                 (another slot)
    booking ──► awaiting_confirmation          (waiting for an OTP)
    any ──► error

A check that does not end ready to confirm tears the session down.

Adapter calls go through :meth:`BookingSession.call`, which keeps them
running if the calling turn is cancelled and makes teardown wait until
they settle, so the resource is never closed under a running call.  A
session with a running call is busy, not idle: eviction skips it and the
idle timer restarts when the call settles.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any, Protocol

from booking_assistant.config import AGENT_SESSION_TIMEOUT_SECONDS
from booking_assistant.errors import ConnectionClosedError
from booking_assistant.models import BookingDetails, SessionState
from booking_assistant.services.metrics import metrics
from booking_assistant.services.otp import OtpRace

logger = logging.getLogger(__name__)


class AutomationResource(Protocol):
    async def screenshot(self, label: str) -> Any: ...

    async def close(self) -> None: ...


ResourceFactory = Callable[[], Awaitable[AutomationResource]]

_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {SessionState.CHECKING, SessionState.BOOKING},
    SessionState.CHECKING: {SessionState.AWAITING_CONFIRMATION},
    SessionState.AWAITING_CONFIRMATION: {SessionState.BOOKING, SessionState.CHECKING},
    SessionState.BOOKING: {
        SessionState.AWAITING_CONFIRMATION,
        SessionState.COMPLETED,
    },
    SessionState.COMPLETED: set(),
    SessionState.ERROR: set(),
}

# Where a snapshot of the page is worth having on teardown.
_SNAPSHOT_STATES = {
    SessionState.CHECKING,
    SessionState.AWAITING_CONFIRMATION,
    SessionState.BOOKING,
}


class BookingSession:
    def __init__(
        self,
        connection_id: str,
        resource: AutomationResource,
        *,
        idle_timeout: float = AGENT_SESSION_TIMEOUT_SECONDS,
        on_closed: Callable[[BookingSession], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.connection_id = connection_id
        self.resource: AutomationResource | None = resource
        self.state = SessionState.IDLE
        self.details = BookingDetails()
        self.otp_race: OtpRace | None = None
        self._idle_timeout = idle_timeout
        self._on_closed = on_closed
        self._clock = clock
        self.last_used = clock()

        self._timer: asyncio.Task | None = None
        self._in_flight = 0
        self._settled = asyncio.Event()
        self._settled.set()
        self._teardown: asyncio.Task | None = None

    @classmethod
    async def acquire(
        cls, connection_id: str, factory: ResourceFactory, **kwargs: Any,
    ) -> BookingSession:
        """Start a resource and wrap it in a fresh session.

        Errors from *factory* (``ResourceError``) propagate and no session
        exists afterwards.
        """
        resource = await factory()
        metrics.increment("ResourcesAcquired")
        metrics.increment("SessionsOpened")
        session = cls(connection_id, resource, **kwargs)
        session.touch()
        logger.info("[%s] Session created", connection_id)
        return session

    # ── State ────────────────────────────────────────────────────────

    @property
    def closed(self) -> bool:
        return self._teardown is not None

    @property
    def idle_for(self) -> float:
        return self._clock() - self.last_used

    @property
    def busy(self) -> bool:
        """True while an adapter call is running.

        A booking attempt parked on its verification code does not count:
        the session is waiting on the user then, not on the platform.
        """
        parked = 1 if self.otp_race is not None and self.otp_race.awaiting_code else 0
        return self._in_flight > parked

    def transition(self, new_state: SessionState) -> None:
        """Move to *new_state*.  Any state may move to ``error``."""
        if new_state is not SessionState.ERROR and new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal session transition {self.state.value} -> {new_state.value}")
        logger.info("[%s] Session %s -> %s", self.connection_id, self.state.value, new_state.value)
        self.state = new_state

    def touch(self) -> None:
        """Mark the session as used and re-arm the idle timer."""
        self.last_used = self._clock()
        if self.closed:
            return
        self._cancel_timer()
        self._timer = asyncio.ensure_future(self._expire())

    async def _expire(self) -> None:
        await asyncio.sleep(self._idle_timeout)
        if self.busy:
            # Re-armed when the running call settles.
            logger.debug("[%s] Idle timer fired during a call, not evicting", self.connection_id)
            return
        logger.info("[%s] Session idle for %.0fs, evicting", self.connection_id, self.idle_for)
        await self.close("idle timeout")

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    # ── Adapter calls ────────────────────────────────────────────────

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Run *coro* as a task that teardown will wait for."""
        if self.closed:
            coro.close()
            raise ConnectionClosedError("This booking session has already ended.")
        self._in_flight += 1
        self._settled.clear()
        task = asyncio.ensure_future(coro)
        task.add_done_callback(self._settle)
        return task

    def _settle(self, task: asyncio.Task) -> None:
        self._in_flight -= 1
        if self._in_flight == 0:
            self._settled.set()
        if not task.cancelled() and task.exception() is not None:
            logger.debug("[%s] Adapter call ended with %r", self.connection_id, task.exception())
        if not self.closed:
            self.touch()

    async def call(self, coro: Coroutine[Any, Any, Any]) -> Any:
        """Await an adapter call; cancelling the caller leaves it running."""
        task = self.spawn(coro)
        self.touch()
        return await asyncio.shield(task)

    async def snapshot(self, label: str) -> None:
        """Best-effort screenshot of the resource; never raises."""
        if self.resource is None:
            return
        platform = self.details.platform.value if self.details.platform else "session"
        try:
            await self.resource.screenshot(f"{platform}-{label}")
        except Exception:
            logger.warning("[%s] Diagnostic snapshot failed", self.connection_id, exc_info=True)

    # ── Teardown ─────────────────────────────────────────────────────

    async def close(self, reason: str) -> None:
        """Tear the session down.  Idempotent; safe from any trigger."""
        if self._teardown is None:
            if self._timer is asyncio.current_task():
                self._timer = None
            self._teardown = asyncio.ensure_future(self._run_teardown(reason))
        await asyncio.shield(self._teardown)

    async def _run_teardown(self, reason: str) -> None:
        logger.info(
            "[%s] Tearing down session (%s, state=%s)", self.connection_id, reason, self.state.value,
        )
        self._cancel_timer()
        if self.otp_race is not None:
            await self.otp_race.abandon()
            self.otp_race = None
        if not self._settled.is_set():
            logger.info("[%s] Waiting for %d in-flight call(s) to settle", self.connection_id, self._in_flight)
            await self._settled.wait()
        if self.state in _SNAPSHOT_STATES:
            await self.snapshot("teardown")
        await self._release()
        metrics.increment("SessionsClosed")
        if self._on_closed is not None:
            self._on_closed(self)

    async def _release(self) -> None:
        resource, self.resource = self.resource, None
        if resource is None:
            return
        try:
            await resource.close()
        except Exception:
            logger.exception("[%s] Failed to release automation resource", self.connection_id)
        finally:
            metrics.increment("ResourcesReleased")
        logger.info("[%s] Automation resource released", self.connection_id)

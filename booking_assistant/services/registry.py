"""Connection registry: live connections, their history and sessions.

The registry is the only owner of per-connection state.  It seeds each new
conversation, serialises that connection's turns, tears everything down
when the connection goes away and runs a periodic sweep that evicts
sessions whose own idle timer never fired.
"""

from __future__ import annotations

import asyncio
import json
import logging

from langchain_core.messages import SystemMessage
from pydantic import ValidationError

from booking_assistant.agent import LanguageModelClient
from booking_assistant.api.schemas import ClientEvent, ServerMessage
from booking_assistant.config import AGENT_SESSION_TIMEOUT_SECONDS, SESSION_SWEEP_INTERVAL_SECONDS
from booking_assistant.models import Platform
from booking_assistant.platforms.base import PlatformAdapter
from booking_assistant.prompts import GREETING, get_system_prompt
from booking_assistant.services.booking_flow import BookingFlow
from booking_assistant.services.browser import create_browser_agent
from booking_assistant.services.context import Connection, ConnectionContext
from booking_assistant.services.dispatch import FunctionDispatcher
from booking_assistant.services.session import ResourceFactory

logger = logging.getLogger(__name__)

CONFIRM_TEXT = "Yes, please confirm the booking."
DECLINE_TEXT = "No, please don't book that."
CANCELLED_TEXT = "Okay, I've cancelled that booking attempt. Let me know if you'd like to start again."
NOTHING_TO_CANCEL_TEXT = "There's no booking in progress right now."


def parse_client_event(raw: str) -> ClientEvent:
    """Parse an inbound frame, treating anything unrecognised as plain text."""
    try:
        event = ClientEvent.model_validate(json.loads(raw))
    except (ValueError, ValidationError):
        return ClientEvent(type="message", payload={"text": raw})
    if event.type == "message" and not isinstance(event.payload.get("text"), str):
        return ClientEvent(type="message", payload={"text": raw})
    return event


def _seed_history() -> list:
    # The greeting is sent without the model, so it is recorded here rather than as a turn.
    prompt = f"{get_system_prompt()}\nYou have already greeted the user with:\n\n{GREETING}\n"
    return [SystemMessage(content=prompt)]


class ConnectionRegistry:
    def __init__(
        self,
        model: LanguageModelClient,
        adapters: dict[Platform, PlatformAdapter],
        *,
        resource_factory: ResourceFactory = create_browser_agent,
        session_timeout: float = AGENT_SESSION_TIMEOUT_SECONDS,
        sweep_interval: float = SESSION_SWEEP_INTERVAL_SECONDS,
        dispatcher: FunctionDispatcher | None = None,
    ):
        self._adapters = adapters
        self._resource_factory = resource_factory
        self._session_timeout = session_timeout
        self._sweep_interval = sweep_interval
        self._dispatcher = dispatcher or FunctionDispatcher(model)
        self._contexts: dict[str, ConnectionContext] = {}
        self._sweeper: asyncio.Task | None = None

    # ── Connections ──────────────────────────────────────────────────

    def get(self, connection_id: str) -> ConnectionContext | None:
        return self._contexts.get(connection_id)

    async def on_connect(self, connection: Connection) -> ConnectionContext:
        """Register *connection* and greet it.  No session is created yet."""
        ctx = ConnectionContext(
            connection=connection,
            history=_seed_history(),
            flow=BookingFlow(
                connection.id,
                self._adapters,
                self._resource_factory,
                session_timeout=self._session_timeout,
            ),
        )
        self._contexts[connection.id] = ctx
        logger.info("[%s] Client connected (%d live)", connection.id, len(self._contexts))
        await ctx.send(ServerMessage.reply(GREETING))
        return ctx

    async def on_message(self, connection_id: str, raw: str) -> None:
        """Handle one inbound frame.  Turns for one connection never overlap."""
        ctx = self._contexts.get(connection_id)
        if ctx is None or ctx.closed:
            logger.debug("[%s] Message for unknown or closed connection dropped", connection_id)
            return

        event = parse_client_event(raw)
        if event.type == "cancel_booking":
            async with ctx.lock:
                cancelled = await ctx.flow.cancel("cancelled by user")
                await ctx.send(ServerMessage.reply(CANCELLED_TEXT if cancelled else NOTHING_TO_CANCEL_TEXT))
            return

        if event.type == "confirm_booking":
            text = CONFIRM_TEXT if event.payload.get("confirm") else DECLINE_TEXT
        else:
            text = event.payload["text"]
        if not text.strip():
            return

        async with ctx.lock:
            if ctx.closed:
                return
            ctx.announced.clear()
            await self._dispatcher.run_turn(ctx, text)

    def submit(self, connection_id: str, raw: str) -> asyncio.Task | None:
        """Handle *raw* in the background so the receive loop stays free."""
        ctx = self._contexts.get(connection_id)
        if ctx is None or ctx.closed:
            return None
        task = asyncio.ensure_future(self.on_message(connection_id, raw))
        ctx.tasks.add(task)
        task.add_done_callback(ctx.tasks.discard)
        return task

    async def on_disconnect(self, connection_id: str) -> None:
        """Forget the connection and release its session before returning."""
        ctx = self._contexts.pop(connection_id, None)
        if ctx is None:
            return
        ctx.closed = True
        pending = list(ctx.tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await ctx.flow.shutdown("connection closed")
        ctx.history.clear()
        logger.info("[%s] Client disconnected (%d live)", connection_id, len(self._contexts))

    # ── Sweep ────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.ensure_future(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            await self.sweep()

    async def sweep(self) -> int:
        """Tear down every session idle for longer than the timeout."""
        stale = [
            ctx.flow.session
            for ctx in list(self._contexts.values())
            if ctx.flow.session is not None
            and not ctx.flow.session.busy
            and ctx.flow.session.idle_for >= self._session_timeout
        ]
        for session in stale:
            logger.info("[%s] Sweep evicting session idle for %.0fs", session.connection_id, session.idle_for)
            try:
                await session.close("sweep")
            except Exception:
                logger.exception("[%s] Sweep failed to tear down session", session.connection_id)
        return len(stale)

    # ── Lifecycle / status ───────────────────────────────────────────

    def status(self) -> dict[str, int]:
        return {
            "connections": len(self._contexts),
            "active_sessions": sum(1 for ctx in self._contexts.values() if ctx.flow.session is not None),
        }

    async def close(self) -> None:
        """Stop the sweep and tear down every connection."""
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)
        for connection_id in list(self._contexts):
            await self.on_disconnect(connection_id)

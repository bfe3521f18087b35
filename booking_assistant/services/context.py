"""Per-connection state passed explicitly through the orchestrator."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from langchain_core.messages import BaseMessage

from booking_assistant.api.schemas import ServerMessage
from booking_assistant.functions import FunctionName
from booking_assistant.services.booking_flow import BookingFlow

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """One user's bidirectional message stream."""

    id: str

    async def send(self, payload: dict[str, Any]) -> None:
        """Deliver one JSON frame.  Must not raise once the stream is gone."""
        ...


@dataclass
class ConnectionContext:
    connection: Connection
    history: list[BaseMessage]
    flow: BookingFlow
    # asyncio.Lock wakes waiters in arrival order: queued turns run FIFO.
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    announced: set[FunctionName] = field(default_factory=set)
    tasks: set[asyncio.Task] = field(default_factory=set)
    closed: bool = False

    @property
    def id(self) -> str:
        return self.connection.id

    async def send(self, message: ServerMessage) -> None:
        if self.closed:
            logger.debug("[%s] Dropping message for closed connection", self.id)
            return
        await self.connection.send(message.to_payload())

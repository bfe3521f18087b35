"""Pydantic schemas for the HTTP endpoints and the chat socket."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "booking-assistant"


class StatusResponse(BaseModel):
    """Live connection and session counts (no session detail)."""

    connections: int = Field(..., ge=0, description="Open chat connections")
    active_sessions: int = Field(..., ge=0, description="Booking sessions holding a browser")


class ClientEvent(BaseModel):
    """Structured inbound frame: ``{type, payload}``."""

    type: Literal["message", "confirm_booking", "cancel_booking"]
    payload: dict[str, Any] = Field(default_factory=dict)


class ServerMessage(BaseModel):
    """Outbound chat frame, serialised with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    sender: Literal["bot"] = "bot"
    text: str = ""
    is_complete: bool | None = None
    executing_script: bool | None = None
    error: bool | None = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def reply(cls, text: str, complete: bool = True) -> ServerMessage:
        return cls(text=text, is_complete=complete)

    @classmethod
    def status(cls, executing: bool) -> ServerMessage:
        return cls(executing_script=executing)

    @classmethod
    def failure(cls, text: str) -> ServerMessage:
        return cls(text=f"Error: {text}", is_complete=True, error=True)

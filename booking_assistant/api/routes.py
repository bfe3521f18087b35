"""FastAPI route definitions for the booking assistant."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import APIRouter, HTTPException, Request, WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from booking_assistant.api.schemas import HealthResponse, StatusResponse
from booking_assistant.services.registry import ConnectionRegistry

logger = logging.getLogger(__name__)

router = APIRouter()
ws_router = APIRouter()


def _get_registry(app) -> ConnectionRegistry:
    """Retrieve the connection registry from app state.

    The registry is built once during the FastAPI lifespan (see
    ``server.py``) rather than as a module-level global.
    """
    registry = getattr(app.state, "registry", None)
    if registry is None:
        raise HTTPException(
            status_code=503,
            detail="The assistant is still starting up. Please try again in a moment.",
        )
    return registry


class WebSocketConnection:
    """Adapts a FastAPI ``WebSocket`` to the registry's connection interface."""

    def __init__(self, websocket: WebSocket):
        self.id = uuid.uuid4().hex[:12]
        self._websocket = websocket

    @property
    def open(self) -> bool:
        return (
            self._websocket.client_state == WebSocketState.CONNECTED
            and self._websocket.application_state == WebSocketState.CONNECTED
        )

    async def send(self, payload: dict[str, Any]) -> None:
        if not self.open:
            logger.debug("[%s] Socket closed, dropping frame", self.id)
            return
        try:
            await self._websocket.send_json(payload)
        except (WebSocketDisconnect, RuntimeError):
            logger.debug("[%s] Socket went away mid-send", self.id)


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.get("/status", response_model=StatusResponse)
async def status(request: Request):
    """Count of live connections and active booking sessions."""
    return StatusResponse(**_get_registry(request.app).status())


@ws_router.websocket("/ws")
async def chat_socket(websocket: WebSocket):
    """One long-lived chat stream per user.

    Frames are handed to the registry as background tasks so a disconnect
    is noticed even while a booking step is still running; the registry
    serialises the turns themselves.
    """
    registry = getattr(websocket.app.state, "registry", None)
    if registry is None:
        await websocket.close(code=1013)
        return
    await websocket.accept()
    connection = WebSocketConnection(websocket)
    await registry.on_connect(connection)
    try:
        while True:
            raw = await websocket.receive_text()
            registry.submit(connection.id, raw)
    except WebSocketDisconnect:
        logger.info("[%s] WebSocket disconnected", connection.id)
    finally:
        await registry.on_disconnect(connection.id)

"""Realtime WebSocket endpoint.

Browsers connect to ``/ws`` and receive Traccar's push envelopes unmodified.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from fleetrelay.api.ws_protocol import PING_EXTENSION

log = structlog.get_logger()

router = APIRouter()


class StarletteBrowserSocket:
    """BrowserSocket on top of an accepted Starlette WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    async def send(self, message: str | bytes) -> bool:
        if self._websocket.application_state != WebSocketState.CONNECTED:
            return False
        try:
            if isinstance(message, bytes):
                await self._websocket.send_bytes(message)
            else:
                await self._websocket.send_text(message)
        except (WebSocketDisconnect, RuntimeError, OSError):
            return False
        return True

    async def ping(self) -> Awaitable[None] | None:
        if self._websocket.application_state != WebSocketState.CONNECTED:
            return None
        extension = self._websocket.scope.get("extensions", {}).get(PING_EXTENSION)
        if extension is None:
            # Server cannot ping; only a disconnect ends this connection.
            answered = asyncio.get_running_loop().create_future()
            answered.set_result(None)
            return answered
        return extension["ping"]()

    async def receive(self) -> bool:
        if self._websocket.client_state != WebSocketState.CONNECTED:
            return False
        try:
            message = await self._websocket.receive()
        except (WebSocketDisconnect, RuntimeError):
            return False
        return message["type"] != "websocket.disconnect"

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if (self._websocket.application_state == WebSocketState.DISCONNECTED
                or self._websocket.client_state == WebSocketState.DISCONNECTED):
            return
        try:
            await self._websocket.close(code=code, reason=reason or None)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            log.debug("browser_close_failed", error=str(exc))


@router.websocket("/ws")
async def realtime(websocket: WebSocket) -> None:
    """Bridge this browser to its own Traccar feed."""
    from fleetrelay.main import get_bridge

    await websocket.accept()
    await get_bridge().handle(StarletteBrowserSocket(websocket))

"""uvicorn WebSocket protocol with application-initiated pings.

ASGI has no message for control frames, so the app cannot ping a browser on
its own. This protocol adds a ``fleetrelay.ping`` scope extension holding a
``ping()`` callable: it sends a ping frame and returns a future resolved by the
matching pong, which browsers send without any script involvement.

Served with ``uvicorn.run(..., ws=PingingWebSocketProtocol)``. Under any other
server the extension is simply absent.
"""

from __future__ import annotations

import asyncio
import os
from typing import Any

from uvicorn.protocols.websockets.websockets_sansio_impl import WebSocketsSansIOProtocol
from websockets.exceptions import InvalidState
from websockets.frames import Frame
from websockets.http11 import Request

PING_EXTENSION = "fleetrelay.ping"


class PingingWebSocketProtocol(WebSocketsSansIOProtocol):
    """WebSocketsSansIOProtocol that lets the app wait for pongs."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._pong_waiters: dict[bytes, asyncio.Future[None]] = {}

    def handle_connect(self, event: Request) -> None:
        super().handle_connect(event)
        scope = getattr(self, "scope", None)
        if scope is not None:
            scope["extensions"][PING_EXTENSION] = {"ping": self.send_app_ping}

    def send_app_ping(self) -> asyncio.Future[None] | None:
        """Send a ping frame. Returns the pong waiter, or None once closed."""
        if self.disconnected or self.close_sent or self.transport.is_closing():
            return None
        payload = os.urandom(4)
        while payload in self._pong_waiters:
            payload = os.urandom(4)
        try:
            self.conn.send_ping(payload)
        except InvalidState:
            return None
        waiter: asyncio.Future[None] = self.loop.create_future()
        self._pong_waiters[payload] = waiter
        self.transport.write(b"".join(self.conn.data_to_send()))
        return waiter

    def handle_pong(self, event: Frame) -> None:
        waiter = self._pong_waiters.pop(bytes(event.data), None)
        if waiter is None:
            # uvicorn's own keepalive pong.
            super().handle_pong(event)
            return
        if not waiter.done():
            waiter.set_result(None)

    def connection_lost(self, exc: Exception | None) -> None:
        for waiter in self._pong_waiters.values():
            waiter.cancel()
        self._pong_waiters.clear()
        super().connection_lost(exc)

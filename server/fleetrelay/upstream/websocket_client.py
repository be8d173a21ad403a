"""websockets-backed implementation of SocketConnector."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

import structlog
import websockets
from websockets.exceptions import ConnectionClosedError, InvalidHandshake, InvalidStatus

from fleetrelay.upstream.base import UpstreamAuthRejected, UpstreamConnectError

log = structlog.get_logger()


class WebsocketsUpstreamSocket:
    """UpstreamSocket wrapping a websockets client connection."""

    def __init__(self, connection) -> None:
        self._connection = connection

    async def __aiter__(self) -> AsyncIterator[str | bytes]:
        try:
            async for message in self._connection:
                yield message
        except ConnectionClosedError as exc:
            # Abnormal close ends the stream like a clean one; the bridge
            # closes the browser side either way.
            close = exc.rcvd
            log.warning("upstream_socket_error",
                        code=close.code if close else None,
                        reason=close.reason if close else "")

    async def close(self) -> None:
        await self._connection.close()


class WebsocketsConnector:
    """Opens upstream sockets with the session cookie in the handshake."""

    def __init__(self, open_timeout: float | None = 10.0) -> None:
        self._open_timeout = open_timeout

    async def connect(self, url: str, token: str) -> WebsocketsUpstreamSocket:
        try:
            connection = await websockets.connect(
                url,
                additional_headers={"Cookie": token},
                open_timeout=self._open_timeout,
            )
        except InvalidStatus as exc:
            status = exc.response.status_code
            if status == 401:
                raise UpstreamAuthRejected(f"handshake rejected with {status}") from exc
            raise UpstreamConnectError(f"handshake rejected with {status}") from exc
        except (OSError, InvalidHandshake, asyncio.TimeoutError) as exc:
            raise UpstreamConnectError(str(exc) or type(exc).__name__) from exc

        log.info("upstream_socket_connected", url=url)
        return WebsocketsUpstreamSocket(connection)

"""Upstream socket interface (port) for the realtime feed."""

from __future__ import annotations

from typing import AsyncIterator, Protocol


class UpstreamConnectError(Exception):
    """The upstream WebSocket could not be opened."""


class UpstreamAuthRejected(UpstreamConnectError):
    """The upstream refused the handshake because the session is not valid."""


class UpstreamSocket(Protocol):
    """Port: one open upstream WebSocket.

    Iterating yields frames in arrival order, ``str`` for text frames and
    ``bytes`` for binary ones, and stops when the socket closes.
    """

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...

    async def close(self) -> None: ...


class SocketConnector(Protocol):
    """Port: opens upstream sockets authenticated with a session token."""

    async def connect(self, url: str, token: str) -> UpstreamSocket: ...

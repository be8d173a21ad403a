"""Tests for the websockets-backed upstream connector against a local server."""

from __future__ import annotations

import socket
from http import HTTPStatus

import pytest
from websockets.asyncio.server import serve

from fleetrelay.upstream.base import UpstreamAuthRejected, UpstreamConnectError
from fleetrelay.upstream.websocket_client import WebsocketsConnector

COOKIE = "JSESSIONID=node0abc1231"
FRAMES = ['{"positions":[{"deviceId":5}]}', b"\x00\x01", "{}"]


async def _process_request(connection, request):
    if request.headers.get("Cookie") != COOKIE:
        return connection.respond(HTTPStatus.UNAUTHORIZED, "Unauthorized\n")
    return None


async def _push_frames(connection):
    for frame in FRAMES:
        await connection.send(frame)
    await connection.close()


def _url(server) -> str:
    port = next(iter(server.sockets)).getsockname()[1]
    return f"ws://127.0.0.1:{port}/api/socket"


@pytest.mark.asyncio
async def test_streams_frames_with_cookie():
    async with serve(_push_frames, "127.0.0.1", 0, process_request=_process_request) as server:
        upstream = await WebsocketsConnector(open_timeout=2).connect(_url(server), COOKIE)
        received = [frame async for frame in upstream]
        await upstream.close()
    assert received == FRAMES


@pytest.mark.asyncio
async def test_rejected_handshake_raises_auth_error():
    async with serve(_push_frames, "127.0.0.1", 0, process_request=_process_request) as server:
        with pytest.raises(UpstreamAuthRejected):
            await WebsocketsConnector(open_timeout=2).connect(_url(server), "JSESSIONID=stale")


@pytest.mark.asyncio
async def test_unreachable_upstream_raises_connect_error():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    with pytest.raises(UpstreamConnectError):
        await WebsocketsConnector(open_timeout=2).connect(f"ws://127.0.0.1:{port}/api/socket", COOKIE)

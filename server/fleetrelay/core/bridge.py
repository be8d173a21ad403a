"""Realtime bridge: pairs each browser WebSocket with its own upstream feed.

Every browser connection gets a dedicated upstream socket opened with the
shared session. Upstream frames are forwarded to that browser untouched and in
order. The two lifetimes are coupled: whichever side goes away first takes the
other one down with it.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import TYPE_CHECKING, Awaitable, Protocol

import structlog

from fleetrelay.upstream.base import UpstreamAuthRejected, UpstreamConnectError

if TYPE_CHECKING:
    from fleetrelay.core.session import UpstreamSession
    from fleetrelay.core.stats import RelayStats
    from fleetrelay.upstream.base import SocketConnector, UpstreamSocket

log = structlog.get_logger()

# RFC 6455 close codes used towards the browser.
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011


class BrowserSocket(Protocol):
    """Port: the browser end of a bridged connection (already accepted)."""

    async def send(self, message: str | bytes) -> bool:
        """Send one frame. Returns False once the browser is gone."""
        ...

    async def ping(self) -> Awaitable[None] | None:
        """Send a control-frame ping.

        Returns an awaitable that completes when the pong arrives, or None
        once the browser is gone.
        """
        ...

    async def receive(self) -> bool:
        """Wait for one inbound frame. Returns False on disconnect."""
        ...

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None: ...


class ClientConnection:
    """One browser connection and the upstream socket paired with it.

    ``is_alive`` is cleared by every heartbeat sweep and set again by the
    pong answering it (or by any frame the browser sends).
    """

    def __init__(
        self,
        browser: BrowserSocket,
        stats: RelayStats | None = None,
    ) -> None:
        self.id = uuid.uuid4().hex[:8]
        self.is_alive = True
        self.upstream: UpstreamSocket | None = None
        self._browser = browser
        self._stats = stats
        self._tasks: set[asyncio.Task] = set()
        self._pong_task: asyncio.Task | None = None
        self._browser_closed = False
        self._upstream_closed = False
        self._close_code = CLOSE_NORMAL

    def mark_alive(self) -> None:
        self.is_alive = True

    async def ping(self) -> bool:
        """Ping the browser. Returns False if the browser is gone.

        The connection is marked alive once the pong comes back.
        """
        pong = await self._browser.ping()
        if pong is None:
            return False
        self._cancel_pong_wait()
        self._pong_task = asyncio.create_task(self._await_pong(pong))
        return True

    async def run(self, upstream: UpstreamSocket) -> None:
        """Bridge until either side closes, then close both."""
        self.upstream = upstream
        pump = asyncio.create_task(self._pump_upstream(upstream))
        listen = asyncio.create_task(self._listen_browser())
        self._tasks = {pump, listen}
        try:
            done, pending = await asyncio.wait(
                self._tasks, return_when=asyncio.FIRST_COMPLETED,
            )
            for task in pending:
                task.cancel()
            for task in self._tasks:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception:
                    log.error("bridge_task_failed", connection=self.id, exc_info=True)
        finally:
            await self._close_upstream()
            await self._close_browser(self._close_code)

    async def terminate(self) -> None:
        """Tear the connection down without waiting for either peer."""
        log.info("client_terminated", connection=self.id)
        self._close_code = CLOSE_GOING_AWAY
        for task in self._tasks:
            task.cancel()
        await self._close_upstream()
        await self._close_browser(CLOSE_GOING_AWAY)

    async def close(self, code: int, reason: str = "") -> None:
        await self._close_browser(code, reason)

    async def _pump_upstream(self, upstream: UpstreamSocket) -> None:
        async for message in upstream:
            if not await self._browser.send(message):
                log.debug("browser_gone_during_send", connection=self.id)
                return
            if self._stats is not None:
                self._stats.record_messages()
        log.info("upstream_socket_closed", connection=self.id)

    async def _listen_browser(self) -> None:
        while await self._browser.receive():
            self.mark_alive()
        log.info("client_disconnected", connection=self.id)

    async def _await_pong(self, pong: Awaitable[None]) -> None:
        try:
            await pong
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.debug("pong_wait_failed", connection=self.id, error=str(exc))
            return
        self.mark_alive()

    def _cancel_pong_wait(self) -> None:
        if self._pong_task is not None and not self._pong_task.done():
            self._pong_task.cancel()
        self._pong_task = None

    async def _close_upstream(self) -> None:
        if self._upstream_closed or self.upstream is None:
            return
        self._upstream_closed = True
        await self.upstream.close()

    async def _close_browser(self, code: int, reason: str = "") -> None:
        if self._browser_closed:
            return
        self._browser_closed = True
        self._cancel_pong_wait()
        await self._browser.close(code, reason)


class RealtimeBridge:
    """Accepts browser connections and pairs each with an upstream socket."""

    def __init__(
        self,
        session: UpstreamSession,
        connector: SocketConnector,
        socket_url: str,
        stats: RelayStats,
    ) -> None:
        self._session = session
        self._connector = connector
        self._socket_url = socket_url
        self._stats = stats
        self._connections: set[ClientConnection] = set()

    @property
    def connections(self) -> list[ClientConnection]:
        return list(self._connections)

    async def handle(self, browser: BrowserSocket) -> None:
        """Serve one accepted browser socket until it is closed."""
        conn = ClientConnection(browser, stats=self._stats)
        log.info("client_connected", connection=conn.id)

        if not await self._session.ensure():
            log.warning("client_rejected_no_session", connection=conn.id)
            await conn.close(CLOSE_POLICY_VIOLATION, "Unable to authenticate with Traccar")
            return

        try:
            upstream = await self._connector.connect(self._socket_url, self._session.token)
        except UpstreamAuthRejected as exc:
            log.warning("upstream_socket_rejected", connection=conn.id, error=str(exc))
            self._session.invalidate()
            self._stats.record_upstream_error("socket_rejected")
            await conn.close(CLOSE_INTERNAL_ERROR, "Traccar rejected the session")
            return
        except UpstreamConnectError as exc:
            log.error("upstream_socket_connect_failed", connection=conn.id, error=str(exc))
            self._stats.record_upstream_error("socket_connect")
            await conn.close(CLOSE_INTERNAL_ERROR, "Unable to reach Traccar")
            return

        self._connections.add(conn)
        self._stats.record_connection_opened()
        try:
            await conn.run(upstream)
        finally:
            self._connections.discard(conn)
            self._stats.record_connection_closed()
            log.info("client_closed", connection=conn.id,
                     active=len(self._connections))

"""Tests for the realtime bridge and the liveness monitor."""

from __future__ import annotations

import asyncio

import pytest

from fakes import FakeBrowserSocket, FakeUpstreamSocket
from fleetrelay.core.bridge import (
    CLOSE_GOING_AWAY,
    CLOSE_INTERNAL_ERROR,
    CLOSE_NORMAL,
    CLOSE_POLICY_VIOLATION,
    ClientConnection,
)
from fleetrelay.core.liveness import LivenessMonitor
from fleetrelay.upstream.base import UpstreamAuthRejected, UpstreamConnectError

ENVELOPES = [
    '{"positions":[{"deviceId":5,"latitude":16.05,"longitude":108.21}]}',
    '{"devices":[{"id":5,"status":"online"}]}',
    b'\x00binary-frame',
    '{"events":[{"type":"deviceOnline","deviceId":5}]}',
]


async def _wait_for(predicate, timeout: float = 1.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


def _bridge():
    from fleetrelay.main import get_bridge

    return get_bridge()


@pytest.mark.asyncio
async def test_frames_forwarded_in_order_unchanged(connector, traccar):
    connector.frames = ENVELOPES
    browser = FakeBrowserSocket()
    task = asyncio.create_task(_bridge().handle(browser))

    await _wait_for(lambda: len(browser.sent) == len(ENVELOPES))
    assert browser.sent == ENVELOPES
    assert isinstance(browser.sent[2], bytes)

    browser.disconnect()
    await asyncio.wait_for(task, 1.0)


@pytest.mark.asyncio
async def test_upstream_uses_session_cookie(connector, traccar):
    browser = FakeBrowserSocket()
    task = asyncio.create_task(_bridge().handle(browser))
    await _wait_for(lambda: len(connector.sockets) == 1)

    url, token = connector.calls[0]
    assert url == "ws://traccar.test/api/socket"
    assert token == "JSESSIONID=node0abc1231"
    assert traccar.logins == 1

    browser.disconnect()
    await asyncio.wait_for(task, 1.0)


@pytest.mark.asyncio
async def test_browser_close_closes_upstream(connector):
    browser = FakeBrowserSocket()
    task = asyncio.create_task(_bridge().handle(browser))
    await _wait_for(lambda: len(_bridge().connections) == 1)

    browser.disconnect()
    await asyncio.wait_for(task, 1.0)
    assert connector.sockets[0].closed
    assert _bridge().connections == []


@pytest.mark.asyncio
async def test_upstream_close_closes_browser(connector):
    connector.frames = ENVELOPES[:1]
    connector.hold_open = False
    browser = FakeBrowserSocket()

    await asyncio.wait_for(_bridge().handle(browser), 1.0)
    assert browser.sent == ENVELOPES[:1]
    assert browser.close_code == CLOSE_NORMAL
    assert _bridge().connections == []


@pytest.mark.asyncio
async def test_no_session_closes_with_policy_violation(connector, traccar):
    traccar.login_ok = False
    browser = FakeBrowserSocket()

    await asyncio.wait_for(_bridge().handle(browser), 1.0)
    assert browser.close_code == CLOSE_POLICY_VIOLATION
    assert connector.calls == []


@pytest.mark.asyncio
async def test_upstream_connect_error_closes_browser(connector):
    connector.error = UpstreamConnectError("connection refused")
    browser = FakeBrowserSocket()

    await asyncio.wait_for(_bridge().handle(browser), 1.0)
    assert browser.close_code == CLOSE_INTERNAL_ERROR
    assert _bridge().connections == []


@pytest.mark.asyncio
async def test_upstream_handshake_401_drops_session(connector):
    from fleetrelay.main import get_session

    connector.error = UpstreamAuthRejected("handshake rejected with 401")
    browser = FakeBrowserSocket()

    await asyncio.wait_for(_bridge().handle(browser), 1.0)
    assert browser.close_code == CLOSE_INTERNAL_ERROR
    assert get_session().token is None


@pytest.mark.asyncio
async def test_each_browser_gets_its_own_upstream(connector):
    browsers = [FakeBrowserSocket() for _ in range(3)]
    tasks = [asyncio.create_task(_bridge().handle(b)) for b in browsers]
    await _wait_for(lambda: len(_bridge().connections) == 3)

    assert len(connector.sockets) == 3
    assert len({id(s) for s in connector.sockets}) == 3

    browsers[0].disconnect()
    await asyncio.wait_for(tasks[0], 1.0)
    assert connector.sockets[0].closed
    assert not connector.sockets[1].closed
    assert not connector.sockets[2].closed

    for b in browsers[1:]:
        b.disconnect()
    await asyncio.wait_for(asyncio.gather(*tasks[1:]), 1.0)


@pytest.mark.asyncio
async def test_connection_counts_in_stats(connector):
    from fleetrelay.main import get_stats

    browser = FakeBrowserSocket()
    task = asyncio.create_task(_bridge().handle(browser))
    await _wait_for(lambda: get_stats().active_connections == 1)

    browser.disconnect()
    await asyncio.wait_for(task, 1.0)
    snap = get_stats().snapshot()["realtime"]
    assert snap["active_connections"] == 0
    assert snap["connections_opened"] == 1
    assert snap["connections_closed"] == 1


@pytest.mark.asyncio
async def test_inbound_frame_marks_alive():
    browser = FakeBrowserSocket()
    conn = ClientConnection(browser)
    task = asyncio.create_task(conn.run(FakeUpstreamSocket()))

    conn.is_alive = False
    browser.push("pong")
    await _wait_for(lambda: conn.is_alive)

    browser.disconnect()
    await asyncio.wait_for(task, 1.0)


@pytest.mark.asyncio
async def test_terminate_closes_both_sides():
    browser = FakeBrowserSocket()
    upstream = FakeUpstreamSocket()
    conn = ClientConnection(browser)
    task = asyncio.create_task(conn.run(upstream))
    await asyncio.sleep(0)

    await conn.terminate()
    await asyncio.wait_for(task, 1.0)
    assert upstream.closed
    assert browser.close_code == CLOSE_GOING_AWAY


# ---------------------------------------------------------------------------
# Liveness monitor
# ---------------------------------------------------------------------------

async def _open_bridged(count: int = 1) -> tuple[list[FakeBrowserSocket], list[asyncio.Task]]:
    browsers = [FakeBrowserSocket() for _ in range(count)]
    tasks = [asyncio.create_task(_bridge().handle(b)) for b in browsers]
    await _wait_for(lambda: len(_bridge().connections) == count)
    return browsers, tasks


@pytest.mark.asyncio
async def test_sweep_sends_control_ping_not_data(connector):
    from fleetrelay.main import get_stats

    (browser,), (task,) = await _open_bridged()
    conn = _bridge().connections[0]

    monitor = LivenessMonitor(_bridge(), get_stats(), interval_seconds=30)
    assert await monitor.sweep() == 0
    assert browser.pings == 1
    assert browser.sent == []
    await _wait_for(lambda: conn.is_alive)

    browser.disconnect()
    await asyncio.wait_for(task, 1.0)


@pytest.mark.asyncio
async def test_silent_client_answering_pings_is_never_reaped(connector):
    from fleetrelay.main import get_stats

    (browser,), (task,) = await _open_bridged()
    conn = _bridge().connections[0]
    monitor = LivenessMonitor(_bridge(), get_stats())

    # The browser never sends a frame; only its pongs come back.
    for _ in range(5):
        assert await monitor.sweep() == 0
        await _wait_for(lambda: conn.is_alive)

    assert not browser.closed
    assert _bridge().connections == [conn]
    assert get_stats().connections_reaped == 0

    browser.disconnect()
    await asyncio.wait_for(task, 1.0)


@pytest.mark.asyncio
async def test_one_missed_pong_survives_two_are_reaped(connector):
    from fleetrelay.main import get_stats

    (browser,), (task,) = await _open_bridged()
    browser.answers_pings = False
    monitor = LivenessMonitor(_bridge(), get_stats())

    # First sweep: ping goes out, no pong comes back.
    assert await monitor.sweep() == 0
    await asyncio.sleep(0.01)
    assert not browser.closed

    # Second sweep: still no pong, so it is terminated.
    assert await monitor.sweep() == 1
    await asyncio.wait_for(task, 1.0)
    assert browser.close_code == CLOSE_GOING_AWAY
    assert connector.sockets[0].closed
    assert _bridge().connections == []
    assert get_stats().connections_reaped == 1


@pytest.mark.asyncio
async def test_inbound_frame_counts_as_answer(connector):
    from fleetrelay.main import get_stats

    (browser,), (task,) = await _open_bridged()
    browser.answers_pings = False
    conn = _bridge().connections[0]
    monitor = LivenessMonitor(_bridge(), get_stats())

    for _ in range(3):
        assert await monitor.sweep() == 0
        browser.push("hello")
        await _wait_for(lambda: conn.is_alive)

    assert not browser.closed
    browser.disconnect()
    await asyncio.wait_for(task, 1.0)


@pytest.mark.asyncio
async def test_failed_ping_terminates(connector):
    from fleetrelay.main import get_stats

    (browser,), (task,) = await _open_bridged()
    browser.gone = True

    monitor = LivenessMonitor(_bridge(), get_stats())
    assert await monitor.sweep() == 1
    await asyncio.wait_for(task, 1.0)
    assert connector.sockets[0].closed


@pytest.mark.asyncio
async def test_dead_connections_are_terminated_concurrently(connector):
    from fleetrelay.main import get_stats

    connector.close_delay = 0.3
    browsers, tasks = await _open_bridged(3)
    for browser in browsers:
        browser.answers_pings = False
    monitor = LivenessMonitor(_bridge(), get_stats())
    assert await monitor.sweep() == 0

    loop = asyncio.get_running_loop()
    started = loop.time()
    assert await monitor.sweep() == 3
    # One close delay, not three in a row.
    assert loop.time() - started < 0.6

    await asyncio.wait_for(asyncio.gather(*tasks), 1.0)
    assert all(sock.closed for sock in connector.sockets)
    assert all(b.close_code == CLOSE_GOING_AWAY for b in browsers)


@pytest.mark.asyncio
async def test_monitor_runs_on_interval(connector):
    from fleetrelay.main import get_stats

    (browser,), (task,) = await _open_bridged()
    browser.answers_pings = False

    monitor = LivenessMonitor(_bridge(), get_stats(), interval_seconds=0.01)
    monitor_task = asyncio.create_task(monitor.run())
    try:
        await asyncio.wait_for(task, 1.0)
    finally:
        monitor_task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await monitor_task
    assert browser.close_code == CLOSE_GOING_AWAY

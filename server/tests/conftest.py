"""Shared test fixtures."""

from __future__ import annotations

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from fakes import FakeConnector, FakeTraccar
import fleetrelay.main as main_module
from fleetrelay.config import AppConfig
from fleetrelay.core.bridge import RealtimeBridge
from fleetrelay.core.relay import RestRelay
from fleetrelay.core.session import SessionStore, UpstreamSession
from fleetrelay.core.stats import RelayStats


@pytest.fixture
def traccar() -> FakeTraccar:
    return FakeTraccar()


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture(autouse=True)
def _init_server(traccar, connector):
    """Initialize relay singletons for every test against the fake Traccar."""
    config = AppConfig()
    config.traccar.url = "http://traccar.test"
    config.traccar.email = "service@example.com"
    config.traccar.password = "secret"
    config.map.mapbox_token = "pk.test-token"
    config.logging.level = "warning"

    upstream_client = httpx.AsyncClient(
        base_url=config.traccar.url,
        transport=httpx.MockTransport(traccar.handler),
    )
    stats = RelayStats()
    session = UpstreamSession(
        client=upstream_client,
        store=SessionStore(),
        email=config.traccar.email,
        password=config.traccar.password,
        stats=stats,
    )
    relay = RestRelay(client=upstream_client, session=session, stats=stats)
    bridge = RealtimeBridge(
        session=session,
        connector=connector,
        socket_url=config.traccar.socket_url,
        stats=stats,
    )

    # Patch module-level singletons
    main_module._config = config
    main_module._stats = stats
    main_module._session = session
    main_module._relay = relay
    main_module._bridge = bridge

    yield

    # Cleanup
    main_module._config = None
    main_module._stats = None
    main_module._session = None
    main_module._relay = None
    main_module._bridge = None


@pytest.fixture
async def client():
    from fleetrelay.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


"""fleetrelay main entry point.

This is the only file that knows about concrete implementations.
It wires together the session, relay, bridge and API layers.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
import structlog
import uvicorn
from fastapi import FastAPI

from fleetrelay.api.fleet import router as fleet_router
from fleetrelay.api.monitoring import router as monitoring_router
from fleetrelay.api.realtime import router as realtime_router
from fleetrelay.api.ws_protocol import PingingWebSocketProtocol
from fleetrelay.config import AppConfig, load_config
from fleetrelay.core.bridge import RealtimeBridge
from fleetrelay.core.liveness import LivenessMonitor
from fleetrelay.core.relay import RestRelay
from fleetrelay.core.session import SessionStore, UpstreamSession
from fleetrelay.core.stats import RelayStats
from fleetrelay.upstream.websocket_client import WebsocketsConnector

log = structlog.get_logger()

# Module-level singletons (set during startup)
_config: AppConfig | None = None
_stats: RelayStats | None = None
_session: UpstreamSession | None = None
_relay: RestRelay | None = None
_bridge: RealtimeBridge | None = None


def get_config() -> AppConfig:
    assert _config is not None, "Server not initialized"
    return _config


def get_stats() -> RelayStats:
    assert _stats is not None, "Server not initialized"
    return _stats


def get_session() -> UpstreamSession:
    assert _session is not None, "Server not initialized"
    return _session


def get_relay() -> RestRelay:
    assert _relay is not None, "Server not initialized"
    return _relay


def get_bridge() -> RealtimeBridge:
    assert _bridge is not None, "Server not initialized"
    return _bridge


def _setup_logging(config: AppConfig) -> None:
    """Configure structlog based on the logging config."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if config.logging.format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=not config.logging.file))

    logger_factory = structlog.PrintLoggerFactory()
    if config.logging.file:
        log_path = Path(config.logging.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger_factory = structlog.WriteLoggerFactory(file=log_path.open("a"))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.logging.level.upper()),
        ),
        logger_factory=logger_factory,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global _config, _stats, _session, _relay, _bridge

    _config = load_config()
    _setup_logging(_config)

    log.info("server_starting",
             env=_config.server.env,
             traccar_url=_config.traccar.url,
             map_enabled=bool(_config.map.mapbox_token))

    # Create components
    client = httpx.AsyncClient(
        base_url=_config.traccar.url,
        timeout=_config.traccar.timeout_seconds,
    )
    _stats = RelayStats()
    _session = UpstreamSession(
        client=client,
        store=SessionStore(),
        email=_config.traccar.email,
        password=_config.traccar.password,
        stats=_stats,
    )
    _relay = RestRelay(client=client, session=_session, stats=_stats)
    _bridge = RealtimeBridge(
        session=_session,
        connector=WebsocketsConnector(),
        socket_url=_config.traccar.socket_url,
        stats=_stats,
    )
    monitor = LivenessMonitor(
        bridge=_bridge,
        stats=_stats,
        interval_seconds=_config.liveness.interval_seconds,
    )

    # Log in up front; a failure here only means the first request retries.
    await _session.authenticate()

    monitor_task = asyncio.create_task(monitor.run())

    log.info("server_started",
             host=_config.server.host,
             port=_config.server.port,
             authenticated=_session.store.authenticated)

    yield

    # Shutdown
    monitor_task.cancel()
    try:
        await monitor_task
    except asyncio.CancelledError:
        pass
    for conn in _bridge.connections:
        await conn.terminate()
    await client.aclose()
    log.info("server_stopped")


app = FastAPI(
    title="fleetrelay",
    description="Traccar session relay and realtime position stream",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(fleet_router)
app.include_router(monitoring_router)
app.include_router(realtime_router)


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    config = load_config()
    uvicorn.run(
        "fleetrelay.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
        # LivenessMonitor sends the pings; uvicorn's own keepalive stays off.
        ws=PingingWebSocketProtocol,
        ws_ping_interval=None,
    )


if __name__ == "__main__":
    run()

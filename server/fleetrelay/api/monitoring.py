"""Health check, client configuration and monitoring endpoints."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter

router = APIRouter(prefix="/api")


@router.get("/health")
async def health() -> dict:
    """Basic health check. Answers 200 even when Traccar is unreachable."""
    from fleetrelay.main import get_bridge, get_session

    return {
        "status": "ok",
        "authenticated": get_session().store.authenticated,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "active_connections": len(get_bridge().connections),
    }


@router.get("/stats")
async def stats() -> dict:
    """Session, relay and realtime counters."""
    from fleetrelay.main import get_stats

    return get_stats().snapshot()


@router.get("/config")
async def get_client_config() -> dict:
    """Configuration for the browser dashboard.

    Without a map token the dashboard skips map initialization; the REST and
    WebSocket relay work regardless.
    """
    from fleetrelay.main import get_config

    return {"mapboxToken": get_config().map.mapbox_token or None}

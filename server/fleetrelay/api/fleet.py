"""Traccar REST passthrough endpoints.

This is the thin FastAPI adapter. It validates what needs validating, hands
the request to the relay, and turns the RelayResult into an HTTP response.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from fleetrelay.core.models import RelayResult
from fleetrelay.core.validation import parse_route_query

log = structlog.get_logger()

router = APIRouter(prefix="/api")


def _to_response(result: RelayResult) -> Response:
    if not result.ok:
        return JSONResponse(content={"error": result.error}, status_code=result.status_code)
    return Response(
        content=result.body,
        status_code=result.status_code,
        media_type="application/json",
    )


async def _relay(request: Request, upstream_path: str) -> Response:
    from fleetrelay.main import get_relay

    result = await get_relay().forward(request.method, upstream_path, request.url.query)
    return _to_response(result)


@router.get("/devices")
async def devices(request: Request) -> Response:
    """Device list, straight from Traccar."""
    return await _relay(request, "/api/devices")


@router.get("/positions")
async def positions(request: Request) -> Response:
    """Latest known position of every device."""
    return await _relay(request, "/api/positions")


@router.get("/reports/route")
async def route_report(request: Request) -> Response:
    """Position history of one device over at most seven days.

    Query: ``deviceId`` (integer), ``from`` and ``to`` (ISO-8601). Invalid
    queries are answered with 400 and never reach Traccar.
    """
    from fleetrelay.main import get_stats

    params = request.query_params
    query, error = parse_route_query(
        params.get("deviceId"), params.get("from"), params.get("to"),
    )
    if query is None:
        get_stats().record_rejected()
        log.info("route_query_rejected", reason=error)
        return JSONResponse(content={"error": error}, status_code=400)

    log.debug("route_query", device_id=query.device_id,
              span_hours=round(query.span_seconds / 3600, 1))
    return await _relay(request, "/api/reports/route")

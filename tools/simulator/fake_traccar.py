#!/usr/bin/env python3
"""Fake Traccar server for local development.

Implements just enough of the Traccar API for fleetrelay: session login,
device and position lists, route reports, and the ``/api/socket`` push feed.
Devices random-walk around a center point and push a position envelope on
every tick.

Usage:
    # 5 devices around Da Nang, relay pointed at it with TRACCAR_URL
    python -m tools.simulator.fake_traccar --port 8082 --devices 5

    # Expire sessions every 2 minutes to exercise re-authentication
    python -m tools.simulator.fake_traccar --session-ttl 120
"""

from __future__ import annotations

import argparse
import asyncio
import json
import math
import random
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse

COOKIE_NAME = "JSESSIONID"


@dataclass
class SimDevice:
    device_id: int
    name: str
    lat: float
    lon: float
    bearing: float
    speed_mps: float
    positions_sent: int = 0


@dataclass
class FakeTraccarState:
    email: str
    password: str
    session_ttl: float
    devices: list[SimDevice] = field(default_factory=list)
    sessions: dict[str, float] = field(default_factory=dict)
    sockets: set[WebSocket] = field(default_factory=set)
    next_position_id: int = 1

    def open_session(self) -> str:
        token = uuid.uuid4().hex
        self.sessions[token] = time.monotonic()
        return token

    def session_valid(self, token: str | None) -> bool:
        if token is None or token not in self.sessions:
            return False
        if self.session_ttl and time.monotonic() - self.sessions[token] > self.session_ttl:
            del self.sessions[token]
            return False
        return True


def move_device(device: SimDevice, dt_seconds: float) -> None:
    """Move a device along its current bearing, with random turns."""
    device.bearing = (device.bearing + random.uniform(-15, 15)) % 360

    # City driving: 3-20 m/s
    device.speed_mps = max(3.0, min(20.0, device.speed_mps + random.uniform(-1, 1)))

    distance_m = device.speed_mps * dt_seconds
    bearing_rad = math.radians(device.bearing)

    # Approximate: 1 degree latitude is about 111,000 m
    dlat = (distance_m * math.cos(bearing_rad)) / 111_000
    dlon = (distance_m * math.sin(bearing_rad)) / (111_000 * math.cos(math.radians(device.lat)))

    device.lat += dlat
    device.lon += dlon


def position_payload(state: FakeTraccarState, device: SimDevice, fix_time: datetime) -> dict:
    """A position object shaped like Traccar's."""
    payload = {
        "id": state.next_position_id,
        "deviceId": device.device_id,
        "protocol": "osmand",
        "fixTime": fix_time.isoformat(),
        "deviceTime": fix_time.isoformat(),
        "serverTime": fix_time.isoformat(),
        "valid": True,
        "latitude": round(device.lat, 6),
        "longitude": round(device.lon, 6),
        "altitude": 0.0,
        # Traccar reports speed in knots.
        "speed": round(device.speed_mps * 1.943844, 2),
        "course": round(device.bearing, 1),
        "attributes": {"motion": True},
    }
    state.next_position_id += 1
    return payload


def device_payload(device: SimDevice) -> dict:
    return {
        "id": device.device_id,
        "name": device.name,
        "uniqueId": f"sim-{device.device_id:04d}",
        "status": "online",
        "lastUpdate": datetime.now(timezone.utc).isoformat(),
        "positionId": 0,
        "category": "truck",
    }


def make_devices(count: int, center: tuple[float, float], radius_km: float) -> list[SimDevice]:
    center_lat, center_lon = center
    devices = []
    for i in range(count):
        # Scatter devices within radius of center
        angle = random.uniform(0, 2 * math.pi)
        dist_km = random.uniform(0, radius_km)
        devices.append(SimDevice(
            device_id=i + 1,
            name=f"Vehicle {i + 1}",
            lat=center_lat + (dist_km / 111.0) * math.cos(angle),
            lon=center_lon + (dist_km / (111.0 * math.cos(math.radians(center_lat)))) * math.sin(angle),
            bearing=random.uniform(0, 360),
            speed_mps=random.uniform(5, 15),
        ))
    return devices


def route_report(state: FakeTraccarState, device_id: int, start: datetime, end: datetime,
                 step_seconds: float = 60.0) -> list[dict]:
    """Synthesize a route for one device between two instants."""
    template = next((d for d in state.devices if d.device_id == device_id), None)
    if template is None:
        return []
    ghost = SimDevice(device_id=device_id, name=template.name, lat=template.lat,
                      lon=template.lon, bearing=template.bearing, speed_mps=template.speed_mps)
    points = []
    t = start
    while t <= end and len(points) < 10_000:
        move_device(ghost, step_seconds)
        points.append(position_payload(state, ghost, t))
        t += timedelta(seconds=step_seconds)
    return points


def create_app(state: FakeTraccarState, tick_seconds: float) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ticker = asyncio.create_task(_tick(state, tick_seconds))
        yield
        ticker.cancel()

    app = FastAPI(title="Fake Traccar", lifespan=lifespan)

    def _authorized(request: Request) -> bool:
        return state.session_valid(request.cookies.get(COOKIE_NAME))

    @app.post("/api/session")
    async def login(request: Request):
        form = parse_qs((await request.body()).decode())
        email = form.get("email", [""])[0]
        password = form.get("password", [""])[0]
        if state.email and (email != state.email or password != state.password):
            return PlainTextResponse("Unauthorized", status_code=401)
        resp = JSONResponse({"id": 1, "email": email, "administrator": True})
        resp.set_cookie(COOKIE_NAME, state.open_session(), httponly=True)
        return resp

    @app.get("/api/devices")
    async def devices(request: Request):
        if not _authorized(request):
            return PlainTextResponse("Unauthorized", status_code=401)
        return [device_payload(d) for d in state.devices]

    @app.get("/api/positions")
    async def positions(request: Request):
        if not _authorized(request):
            return PlainTextResponse("Unauthorized", status_code=401)
        now = datetime.now(timezone.utc)
        return [position_payload(state, d, now) for d in state.devices]

    @app.get("/api/reports/route")
    async def route(request: Request):
        if not _authorized(request):
            return PlainTextResponse("Unauthorized", status_code=401)
        params = request.query_params
        try:
            device_id = int(params["deviceId"])
            start = datetime.fromisoformat(params["from"])
            end = datetime.fromisoformat(params["to"])
        except (KeyError, ValueError):
            return PlainTextResponse("Bad request", status_code=400)
        return route_report(state, device_id, start, end)

    @app.websocket("/api/socket")
    async def socket(websocket: WebSocket):
        if not state.session_valid(websocket.cookies.get(COOKIE_NAME)):
            await websocket.close(code=1008)
            return
        await websocket.accept()
        await websocket.send_text(json.dumps({"devices": [device_payload(d) for d in state.devices]}))
        state.sockets.add(websocket)
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            state.sockets.discard(websocket)

    return app


async def _tick(state: FakeTraccarState, tick_seconds: float) -> None:
    """Move every device and push one envelope to every open socket."""
    while True:
        await asyncio.sleep(tick_seconds)
        now = datetime.now(timezone.utc)
        positions = []
        for device in state.devices:
            move_device(device, tick_seconds)
            positions.append(position_payload(state, device, now))
            device.positions_sent += 1
        message = json.dumps({"positions": positions})
        for websocket in list(state.sockets):
            try:
                await websocket.send_text(message)
            except (WebSocketDisconnect, RuntimeError):
                state.sockets.discard(websocket)


def main():
    parser = argparse.ArgumentParser(description="Fake Traccar server for fleetrelay development")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    parser.add_argument("--port", type=int, default=8082, help="Bind port")
    parser.add_argument("--devices", type=int, default=5, help="Number of simulated devices")
    parser.add_argument("--tick", type=float, default=5.0, help="Seconds between position pushes")
    parser.add_argument("--center", type=str, default="16.0471,108.2068",
                        help="Center lat,lon (default: Da Nang)")
    parser.add_argument("--radius-km", type=float, default=5.0, help="Scatter radius in km")
    parser.add_argument("--email", default="", help="Accepted login email (empty accepts any)")
    parser.add_argument("--password", default="", help="Accepted login password")
    parser.add_argument("--session-ttl", type=float, default=0,
                        help="Expire sessions after N seconds (0 = never)")

    args = parser.parse_args()

    lat, lon = args.center.split(",")
    state = FakeTraccarState(
        email=args.email,
        password=args.password,
        session_ttl=args.session_ttl,
        devices=make_devices(args.devices, (float(lat), float(lon)), args.radius_km),
    )

    print(f"Fake Traccar: {args.devices} devices, tick {args.tick}s")
    print(f"  Center: {float(lat):.4f}, {float(lon):.4f}")
    print(f"  Session TTL: {args.session_ttl or 'none'}")
    print(f"  Listening: http://{args.host}:{args.port}")
    print()

    uvicorn.run(create_app(state, args.tick), host=args.host, port=args.port, log_level="warning")


if __name__ == "__main__":
    main()

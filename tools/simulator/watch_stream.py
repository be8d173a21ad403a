#!/usr/bin/env python3
"""Terminal watcher for the fleetrelay realtime stream.

Connects to ``/ws`` the way the dashboard does: it never sends a frame, every
envelope is summarized on stdout (pings are answered by the websockets
library), and a dropped connection is retried with a growing delay until the
attempt budget runs out.

Usage:
    python -m tools.simulator.watch_stream --url ws://localhost:3000/ws

    # Print every position instead of per-envelope counts
    python -m tools.simulator.watch_stream --verbose
"""

from __future__ import annotations

import argparse
import asyncio
import json
import time

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

# Browser-side reconnect policy.
RECONNECT_BASE_SECONDS = 5.0
RECONNECT_CAP_SECONDS = 30.0
MAX_RECONNECT_ATTEMPTS = 10


def reconnect_delay(attempt: int, base: float = RECONNECT_BASE_SECONDS,
                    cap: float = RECONNECT_CAP_SECONDS) -> float:
    """Delay before reconnect ``attempt`` (1-based): linear growth, capped."""
    return min(base * attempt, cap)


def summarize(message: str) -> str:
    """One-line description of an upstream envelope."""
    try:
        data = json.loads(message)
    except json.JSONDecodeError:
        return f"unparseable frame ({len(message)} chars)"
    if not isinstance(data, dict):
        return "unexpected frame"
    parts = []
    for key in ("devices", "positions", "events"):
        if data.get(key):
            parts.append(f"{len(data[key])} {key}")
    return ", ".join(parts) if parts else "empty envelope"


async def watch_once(url: str, verbose: bool) -> int:
    """Consume the stream until it closes. Returns the number of frames seen."""
    frames = 0
    async with websockets.connect(url) as ws:
        print(f"Connected to {url}")
        async for message in ws:
            frames += 1
            if isinstance(message, bytes):
                print(f"  binary frame ({len(message)} bytes)")
                continue
            stamp = time.strftime("%H:%M:%S")
            print(f"[{stamp}] {summarize(message)}")
            if verbose:
                for pos in json.loads(message).get("positions", []):
                    print(f"    device {pos.get('deviceId')}: "
                          f"{pos.get('latitude')}, {pos.get('longitude')} "
                          f"speed={pos.get('speed')}")
    return frames


async def run_watcher(args: argparse.Namespace) -> None:
    attempts = 0
    while True:
        try:
            frames = await watch_once(args.url, args.verbose)
            if frames:
                attempts = 0
            print("Stream closed")
        except (OSError, InvalidHandshake, ConnectionClosed) as exc:
            print(f"Connection failed: {exc}")

        if attempts >= args.max_attempts:
            print("Max reconnection attempts reached; restart to try again")
            return
        attempts += 1
        delay = reconnect_delay(attempts)
        print(f"Reconnecting in {delay:.0f}s (attempt {attempts})")
        await asyncio.sleep(delay)


def main():
    parser = argparse.ArgumentParser(description="Watch the fleetrelay realtime stream")
    parser.add_argument("--url", default="ws://localhost:3000/ws", help="Relay WebSocket URL")
    parser.add_argument("--max-attempts", type=int, default=MAX_RECONNECT_ATTEMPTS,
                        help="Reconnect attempts before giving up")
    parser.add_argument("--verbose", action="store_true", help="Print every position")

    args = parser.parse_args()
    try:
        asyncio.run(run_watcher(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()

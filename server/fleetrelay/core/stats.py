"""Relay statistics.

In-memory counters for the session, the REST relay and the realtime bridge.
No framework dependencies.
"""

from __future__ import annotations

import threading
import time


class RelayStats:
    """Thread-safe relay counters.

    ``active_connections`` is a gauge maintained by the bridge; everything
    else only ever grows for the lifetime of the process.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started_at = time.time()

        # Session
        self.auth_attempts: int = 0
        self.auth_failures: int = 0
        self.last_auth_at: float | None = None

        # REST relay
        self.requests_forwarded: int = 0
        self.requests_rejected: int = 0
        self.retries: int = 0
        self.upstream_errors: dict[str, int] = {}

        # Realtime bridge
        self.connections_opened: int = 0
        self.connections_closed: int = 0
        self.connections_reaped: int = 0
        self.active_connections: int = 0
        self.messages_relayed: int = 0

    def record_auth(self, success: bool) -> None:
        with self._lock:
            self.auth_attempts += 1
            if success:
                self.last_auth_at = time.time()
            else:
                self.auth_failures += 1

    def record_forwarded(self) -> None:
        with self._lock:
            self.requests_forwarded += 1

    def record_rejected(self) -> None:
        """Record a request refused by validation before reaching upstream."""
        with self._lock:
            self.requests_rejected += 1

    def record_retry(self) -> None:
        with self._lock:
            self.retries += 1

    def record_upstream_error(self, kind: str) -> None:
        with self._lock:
            self.upstream_errors[kind] = self.upstream_errors.get(kind, 0) + 1

    def record_connection_opened(self) -> None:
        with self._lock:
            self.connections_opened += 1
            self.active_connections += 1

    def record_connection_closed(self) -> None:
        with self._lock:
            self.connections_closed += 1
            self.active_connections = max(0, self.active_connections - 1)

    def record_reaped(self) -> None:
        with self._lock:
            self.connections_reaped += 1

    def record_messages(self, count: int = 1) -> None:
        with self._lock:
            self.messages_relayed += count

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot of all stats."""
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._started_at, 1),
                "session": {
                    "auth_attempts": self.auth_attempts,
                    "auth_failures": self.auth_failures,
                    "last_auth_at": self.last_auth_at,
                },
                "relay": {
                    "requests_forwarded": self.requests_forwarded,
                    "requests_rejected": self.requests_rejected,
                    "retries": self.retries,
                    "upstream_errors": dict(self.upstream_errors),
                },
                "realtime": {
                    "active_connections": self.active_connections,
                    "connections_opened": self.connections_opened,
                    "connections_closed": self.connections_closed,
                    "connections_reaped": self.connections_reaped,
                    "messages_relayed": self.messages_relayed,
                },
            }

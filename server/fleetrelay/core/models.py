"""Core internal data models.

Plain dataclasses with no framework dependencies. HTTP requests and upstream
responses are converted to/from these at the boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class RouteQuery:
    """A validated history request. Datetimes are timezone-aware UTC."""
    device_id: int
    start: datetime
    end: datetime

    @property
    def span_seconds(self) -> float:
        return (self.end - self.start).total_seconds()


@dataclass(frozen=True)
class RelayResult:
    """Outcome of a relayed REST call.

    On success ``body`` holds the upstream JSON bytes untouched. On failure
    ``error`` holds a generic message that is safe to show to the browser.
    """
    status_code: int
    body: bytes = b""
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error

"""REST relay: forwards browser requests to the Traccar API.

This is the core business logic for the REST side. It knows the upstream
session and an httpx client, never FastAPI. Every upstream failure is
translated here into a RelayResult carrying a generic message; details stay
in the server log.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx
import structlog

from fleetrelay.core.models import RelayResult

if TYPE_CHECKING:
    from fleetrelay.core.session import UpstreamSession
    from fleetrelay.core.stats import RelayStats

log = structlog.get_logger()

# Characters of an unexpected upstream body kept in the log.
EXCERPT_LENGTH = 200

UNAVAILABLE = "Unable to connect to Traccar"
RECONNECT_FAILED = "Unable to reconnect to Traccar"
NON_JSON = "Traccar returned non-JSON response"
TRANSPORT_FAILED = "Upstream request failed"
UPSTREAM_ERROR = "Traccar returned an error"


@dataclass(frozen=True)
class RetryPolicy:
    """How often a request rejected with 401 may be sent.

    ``max_attempts`` counts the first call, so 2 means one retry after
    re-authenticating. Methods outside ``retry_methods`` are sent once.
    """
    max_attempts: int = 2
    retry_methods: frozenset[str] = frozenset({"GET", "HEAD", "OPTIONS"})

    def allows_retry(self, method: str, attempt: int) -> bool:
        return method.upper() in self.retry_methods and attempt < self.max_attempts


def _is_json(resp: httpx.Response) -> bool:
    return "application/json" in resp.headers.get("content-type", "")


class RestRelay:
    """Sends requests upstream with the shared session."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        session: UpstreamSession,
        stats: RelayStats,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._client = client
        self._session = session
        self._stats = stats
        self._policy = policy or RetryPolicy()

    async def forward(self, method: str, path: str, query: str = "") -> RelayResult:
        """Relay one request. Never raises for upstream failures."""
        if not await self._session.ensure():
            return self._fail(503, UNAVAILABLE, "unavailable", path)

        url = f"{path}?{query}" if query else path
        attempt = 0
        while True:
            attempt += 1
            token = self._session.token
            if token is None:
                # Another request dropped the session between our login and now.
                if not await self._session.authenticate():
                    return self._fail(503, UNAVAILABLE, "unavailable", path)
                token = self._session.token

            try:
                resp = await self._client.request(
                    method,
                    url,
                    headers={"Cookie": token, "Accept": "application/json"},
                )
            except httpx.HTTPError as exc:
                log.error("upstream_request_failed", path=path, error=str(exc),
                          error_type=type(exc).__name__)
                return self._fail(500, TRANSPORT_FAILED, "transport", path)

            if resp.status_code == 401:
                log.info("upstream_unauthorized", path=path, attempt=attempt)
                self._session.invalidate()
                if not self._policy.allows_retry(method, attempt):
                    # The next request logs in again lazily.
                    return self._fail(503, RECONNECT_FAILED, "unauthorized", path)
                if not await self._session.authenticate():
                    return self._fail(503, RECONNECT_FAILED, "unauthorized", path)
                self._stats.record_retry()
                continue

            return self._result_from(resp, path)

    def _result_from(self, resp: httpx.Response, path: str) -> RelayResult:
        body = resp.content
        if not resp.is_success:
            log.error("upstream_error_status", path=path, status=resp.status_code,
                      excerpt=resp.text[:EXCERPT_LENGTH])
            return self._fail(502, UPSTREAM_ERROR, "upstream_status", path)
        if not _is_json(resp):
            log.error("upstream_non_json", path=path, status=resp.status_code,
                      content_type=resp.headers.get("content-type", ""),
                      excerpt=resp.text[:EXCERPT_LENGTH])
            return self._fail(502, NON_JSON, "protocol", path)
        try:
            json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            log.error("upstream_invalid_json", path=path, status=resp.status_code,
                      excerpt=resp.text[:EXCERPT_LENGTH])
            return self._fail(502, NON_JSON, "protocol", path)

        self._stats.record_forwarded()
        log.debug("upstream_forwarded", path=path, status=resp.status_code,
                  size=len(body))
        return RelayResult(status_code=resp.status_code, body=body)

    def _fail(self, status: int, message: str, kind: str, path: str) -> RelayResult:
        self._stats.record_upstream_error(kind)
        log.warning("relay_failed", path=path, status=status, kind=kind)
        return RelayResult(status_code=status, error=message)

"""Upstream session handling.

One Traccar session cookie is shared by every REST call and every bridged
WebSocket in the process. It is obtained lazily: whoever needs it and finds
it missing (or rejected) logs in again.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
import structlog

if TYPE_CHECKING:
    from fleetrelay.core.stats import RelayStats

log = structlog.get_logger()

SESSION_PATH = "/api/session"


class SessionStore:
    """Holds the current session token.

    Replacement is a single attribute assignment, so a reader on the event
    loop sees either the old token or the new one, never a mix.
    """

    def __init__(self) -> None:
        self._token: str | None = None

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def authenticated(self) -> bool:
        return self._token is not None

    def replace(self, token: str) -> None:
        self._token = token

    def invalidate(self) -> None:
        self._token = None


def cookie_header(set_cookie_values: list[str]) -> str:
    """Collapse Set-Cookie values into a Cookie request header value."""
    pairs = [value.split(";", 1)[0].strip() for value in set_cookie_values]
    return "; ".join(pair for pair in pairs if pair)


class UpstreamSession:
    """Logs into Traccar with the service account and keeps the cookie."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        store: SessionStore,
        email: str,
        password: str,
        stats: RelayStats | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._email = email
        self._password = password
        self._stats = stats

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def token(self) -> str | None:
        return self._store.token

    async def authenticate(self) -> bool:
        """Log in and store the session cookie. Returns True on success.

        Failures are logged and reported through the return value; they never
        propagate, so a broken upstream degrades callers to 503 instead of
        taking the process down.
        """
        log.info("traccar_authenticating")
        try:
            resp = await self._client.post(
                SESSION_PATH,
                data={"email": self._email, "password": self._password},
            )
        except httpx.HTTPError as exc:
            return self._failed(f"transport error: {exc}")

        if not resp.is_success:
            return self._failed(f"status {resp.status_code}")

        token = cookie_header(resp.headers.get_list("set-cookie"))
        if not token:
            return self._failed("no session cookie received")

        # The store is the only credential holder; keep httpx's jar empty.
        self._client.cookies.clear()
        self._store.replace(token)
        if self._stats is not None:
            self._stats.record_auth(True)
        log.info("traccar_authenticated")
        return True

    async def ensure(self) -> bool:
        """Authenticate only if no session is currently held."""
        if self._store.authenticated:
            return True
        return await self.authenticate()

    def invalidate(self) -> None:
        """Forget the current session after upstream rejected it."""
        if self._store.authenticated:
            log.info("traccar_session_expired")
        self._store.invalidate()

    def _failed(self, reason: str) -> bool:
        if self._stats is not None:
            self._stats.record_auth(False)
        log.error("traccar_auth_failed", reason=reason)
        return False

"""Session authentication: bearer token acquisition, refresh and logout."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any

import httpx

from .environments import Environment
from .exceptions import ImsLoadAuthError
from .logging_config import get_logger

logger = get_logger("auth")

LOGOUT_PATH = "/api/v1/auth/logout"
AUTH_TIMEOUT_SEC = 10.0
# Refresh this many seconds before the server-declared expiry
EXPIRY_MARGIN_SEC = 30.0
# Minimum pause between failed re-authentication attempts during a run
REAUTH_BACKOFF_SEC = 5.0


def bearer_headers(token: str | None) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


class SessionAuthenticator:
    """Holds the run's bearer token.

    Login failures during setup raise ImsLoadAuthError. Once the run is going,
    refresh failures are logged and the stale token is kept: the affected
    requests fail with 401 and are recorded like any other failure.
    """

    __slots__ = ("environment", "_clock", "_token", "_expires_at", "_stale", "_lock", "_next_attempt", "logins")

    def __init__(self, environment: Environment, clock: Callable[[], float] = time.monotonic) -> None:
        self.environment = environment
        self._clock = clock
        self._token: str | None = None
        self._expires_at: float | None = None
        self._stale = False
        self._lock: asyncio.Lock | None = None
        self._next_attempt = 0.0
        self.logins = 0

    @property
    def token(self) -> str | None:
        return self._token

    def _credentials(self) -> dict[str, Any]:
        env = self.environment
        payload: dict[str, Any] = {}
        if env.username:
            payload["username"] = env.username
            payload["password"] = env.password
        if env.client_secret:
            payload["client_id"] = env.client_id
            payload["client_secret"] = env.client_secret
            payload.setdefault("grant_type", "password" if env.username else "client_credentials")
        return payload

    def needs_refresh(self) -> bool:
        if self._token is None or self._stale:
            return True
        return self._expires_at is not None and self._clock() >= self._expires_at - EXPIRY_MARGIN_SEC

    async def login(self, client: httpx.AsyncClient) -> str:
        """Exchange credentials for a bearer token.

        Raises:
            ImsLoadAuthError: Transport failure, non-2xx status, no token or a malformed expires_in
        """
        url = self.environment.auth_url
        env_ctx = {"environment": self.environment.name}
        try:
            r = await client.post(url, json=self._credentials(), timeout=AUTH_TIMEOUT_SEC)
        except httpx.HTTPError as e:
            raise ImsLoadAuthError(
                f"Authentication request failed: {e}", url=url, context=env_ctx, original_error=e
            ) from e
        if not 200 <= r.status_code < 300:
            raise ImsLoadAuthError(
                f"Authentication failed with HTTP {r.status_code}", url=url, status_code=r.status_code, context=env_ctx
            )
        try:
            data = r.json()
        except ValueError as e:
            raise ImsLoadAuthError(
                "Authentication response is not JSON", url=url, status_code=r.status_code, original_error=e
            ) from e
        token = (data.get("access_token") or data.get("token")) if isinstance(data, dict) else None
        if not token:
            raise ImsLoadAuthError(
                "Authentication response has no access_token or token", url=url, status_code=r.status_code
            )
        expires_in = data.get("expires_in")
        try:
            ttl = float(expires_in) if expires_in else None
        except (TypeError, ValueError) as e:
            raise ImsLoadAuthError(
                f"Authentication response has a non-numeric expires_in: {expires_in!r}",
                url=url,
                status_code=r.status_code,
                original_error=e,
            ) from e

        self._token = str(token)
        self._stale = False
        self._expires_at = self._clock() + ttl if ttl is not None else None
        self.logins += 1
        logger.info("Authenticated against %s (environment=%s)", url, self.environment.name)
        return self._token

    async def token_for_request(self, client: httpx.AsyncClient) -> str | None:
        """Current token, re-authenticating first when it expired or was rejected.

        Concurrent callers share one re-authentication.
        """
        if not self.needs_refresh():
            return self._token
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if self.needs_refresh() and self._clock() >= self._next_attempt:
                try:
                    await self.login(client)
                except ImsLoadAuthError as e:
                    self._next_attempt = self._clock() + REAUTH_BACKOFF_SEC
                    logger.warning("Re-authentication failed, keeping previous token: %s", e)
        return self._token

    def invalidate(self) -> None:
        """Mark the token as rejected (HTTP 401). The next request re-authenticates."""
        self._stale = True

    async def logout(self, client: httpx.AsyncClient) -> None:
        """Release the session. Never raises; teardown must always complete."""
        if self._token is None:
            return
        url = self.environment.base_url + LOGOUT_PATH
        try:
            r = await client.post(url, headers=bearer_headers(self._token), timeout=AUTH_TIMEOUT_SEC)
            if r.status_code >= 400:
                logger.warning("Logout returned HTTP %s", r.status_code)
        except httpx.HTTPError as e:
            logger.warning("Logout failed: %s", e)
        finally:
            self._token = None

"""Session handling for the live-location API.

The API issues a token from a username/password login. Tokens are cached
until they expire; a 401 from a dependent call discards the token and allows
exactly one re-authentication and one retry.
"""

import logging
import math
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable

import requests

from pelagic_tracks.errors import (
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
    UpstreamError,
)

logger = logging.getLogger(__name__)

DEFAULT_AUTH_TIMEOUT = 10.0
DEFAULT_TOKEN_LIFETIME = 3600.0  # used when the login response has no expiresIn


@dataclass(frozen=True)
class SessionToken:
    token: str
    refresh_token: str | None
    expires_at: float  # clock() time


class SessionManager:
    def __init__(
        self,
        login_url: str,
        username: str | None,
        password: str | None,
        timeout: float = DEFAULT_AUTH_TIMEOUT,
        token_lifetime: float = DEFAULT_TOKEN_LIFETIME,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.login_url = login_url
        self.username = username
        self.password = password
        self.timeout = timeout
        self.token_lifetime = token_lifetime
        self.session = session or requests.Session()
        self.clock = clock
        self._token: SessionToken | None = None
        self._lock = Lock()

    @property
    def token(self) -> SessionToken | None:
        with self._lock:
            return self._token

    def invalidate(self) -> None:
        """Discard the cached token."""
        with self._lock:
            self._token = None

    def _discard(self, token: str) -> None:
        # Another thread may already have replaced the token
        with self._lock:
            if self._token is not None and self._token.token == token:
                self._token = None

    def get_token(self) -> str:
        """Return a valid token, logging in if none is cached or it has expired.

        Raises:
            ConfigurationError: If username or password are not configured.
            AuthenticationError: If the login request fails.
        """
        with self._lock:
            if self._token is not None and self.clock() < self._token.expires_at:
                return self._token.token
            self._token = self._authenticate()
            return self._token.token

    def _authenticate(self) -> SessionToken:
        if not self.username or not self.password:
            raise ConfigurationError(
                "Live-location credentials not configured. Set username and password "
                "in pelagic-tracks.json or PELAGIC_USERNAME / PELAGIC_PASSWORD."
            )

        logger.info("Authenticating with %s", self.login_url)
        try:
            response = self.session.post(
                self.login_url,
                json={"username": self.username, "password": self.password},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise AuthenticationError(f"Authentication request failed: {e}") from e

        if not response.ok:
            raise AuthenticationError(f"Authentication failed: {response.status_code} {response.reason}")

        try:
            data = response.json()
        except ValueError as e:
            raise AuthenticationError("Authentication response is not JSON") from e
        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise AuthenticationError("Authentication response has no token")

        return SessionToken(
            token=token,
            refresh_token=data.get("refreshToken"),
            expires_at=self.clock() + self._lifetime(data.get("expiresIn")),
        )

    def _lifetime(self, expires_in) -> float:
        """Token lifetime in seconds, the configured default when the API value is unusable."""
        if expires_in is None or expires_in == "":
            return self.token_lifetime
        try:
            lifetime = float(expires_in)
        except (TypeError, ValueError):
            lifetime = math.nan
        if not math.isfinite(lifetime) or lifetime <= 0:
            logger.warning("Ignoring invalid expiresIn %r, using %ss", expires_in, self.token_lifetime)
            return self.token_lifetime
        return lifetime

    def with_token(self, request: Callable[[str], requests.Response]) -> requests.Response:
        """Run `request(token)`, re-authenticating once on a 401.

        Args:
            request: Performs the dependent call with the given token.

        Returns:
            The successful response.

        Raises:
            AuthorizationError: If the retry after re-authentication is also rejected.
            UpstreamError: On any other non-2xx response.
        """
        token = self.get_token()
        response = request(token)

        if response.status_code == 401:
            logger.info("Token rejected, re-authenticating")
            self._discard(token)
            token = self.get_token()
            response = request(token)
            if response.status_code == 401:
                self._discard(token)
                raise AuthorizationError("Request rejected after re-authentication")

        if not response.ok:
            raise UpstreamError(
                f"Request failed: {response.reason}",
                upstream=response.url or None,
                status=response.status_code,
            )
        return response

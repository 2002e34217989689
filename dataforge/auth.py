"""Cached client-credentials token authentication with single-flight refresh."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Callable

import requests
from requests.auth import AuthBase, HTTPBasicAuth

from dataforge.exceptions import AuthenticationError
from dataforge.logging_utils import get_logger
from dataforge.models import AuthToken

logger = get_logger(__name__)

DEFAULT_EXPIRES_IN = 3600


class TokenAuthenticator(AuthBase):
    """Exchange client credentials for a bearer token and cache it until expiry.

    Reads of a still-valid token never take the lock: the cached
    :class:`AuthToken` is immutable and swapped by a single assignment.
    Refreshes happen under an exclusive lock with a second validity check,
    so concurrent callers hitting an expired token trigger one exchange.

    The instance is also a ``requests`` auth handler, setting
    ``<header_name>: <scheme> <token>`` on outgoing requests.
    """

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        session: requests.Session | None = None,
        timeout: int = 10,
        header_name: str = "Authorization",
        scheme: str | None = "Bearer",
        clock: Callable[[], datetime] | None = None,
    ):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.session = session or requests.Session()
        self.timeout = timeout
        self.header_name = header_name
        self.scheme = scheme
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._token: AuthToken | None = None
        self.refresh_count = 0

    def __call__(self, request: requests.PreparedRequest) -> requests.PreparedRequest:
        token = self.get_token()
        request.headers[self.header_name] = f"{self.scheme} {token}" if self.scheme else token
        return request

    def get_token(self) -> str:
        token = self._token
        if token is not None and token.is_valid(self._clock()):
            return token.value

        with self._lock:
            token = self._token
            if token is not None and token.is_valid(self._clock()):
                return token.value
            token = self._exchange()
            self._token = token
            return token.value

    def _exchange(self) -> AuthToken:
        try:
            response = self.session.post(
                self.token_url,
                data={"grant_type": "client_credentials"},
                auth=HTTPBasicAuth(self.client_id, self.client_secret),
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise AuthenticationError(
                f"Token request failed: {e}",
                details={"token_url": self.token_url},
            ) from e

        if response.status_code != 200:
            raise AuthenticationError(
                f"Token endpoint returned status {response.status_code}",
                details={"token_url": self.token_url, "response": response.text[:500]},
            )

        try:
            body = response.json()
        except ValueError as e:
            raise AuthenticationError("Token endpoint returned invalid JSON", details={"token_url": self.token_url}) from e

        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token:
            raise AuthenticationError("Token endpoint response has no access_token", details={"token_url": self.token_url})

        try:
            expires_in = int(body.get("expires_in", DEFAULT_EXPIRES_IN))
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN

        self.refresh_count += 1
        token = AuthToken(value=access_token, expires_at=self._clock() + timedelta(seconds=expires_in))
        logger.info(
            "Access token refreshed",
            extra={"token_url": self.token_url, "expires_at": token.expires_at},
        )
        return token


class StaticKeyAuthenticator(AuthBase):
    """Set a fixed credential header; the non-refreshing counterpart of :class:`TokenAuthenticator`."""

    def __init__(self, key: str, header_name: str = "Authorization", scheme: str | None = None):
        self.key = key
        self.header_name = header_name
        self.scheme = scheme

    def get_token(self) -> str:
        return self.key

    def __call__(self, request: requests.PreparedRequest) -> requests.PreparedRequest:
        request.headers[self.header_name] = f"{self.scheme} {self.key}" if self.scheme else self.key
        return request

"""Shared HTTP session and request helpers for API-backed connectors."""

from __future__ import annotations

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from dataforge.exceptions import APIConnectionError, APIResponseError, APITimeoutError

RETRY_STATUSES = [429, 500, 502, 503, 504]


def create_http_session(
    max_retries: int = 3,
    auth: requests.auth.AuthBase | None = None,
    allowed_methods: tuple[str, ...] = ("GET",),
) -> requests.Session:
    """Create a requests session that re-requests ``allowed_methods`` answered with 429/5xx.

    Connection failures and read timeouts are never retried here; they
    propagate to the caller.
    """
    session = requests.Session()

    retry_strategy = Retry(
        total=max_retries,
        connect=0,
        read=0,
        other=0,
        status_forcelist=RETRY_STATUSES,
        allowed_methods=list(allowed_methods),
        backoff_factor=1,
        raise_on_status=False,
    )

    adapter = HTTPAdapter(max_retries=retry_strategy, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    if auth is not None:
        session.auth = auth

    return session


def request_json(
    session: requests.Session,
    method: str,
    url: str,
    timeout: int,
    params: dict | None = None,
    headers: dict | None = None,
    json_body: dict | list | None = None,
) -> dict | list:
    """Send one request and return the decoded JSON body."""
    try:
        response = session.request(method, url, params=params, headers=headers, json=json_body, timeout=timeout)
    except requests.exceptions.Timeout as e:
        raise APITimeoutError(
            f"API request timed out after {timeout}s",
            details={"url": url, "params": params},
        ) from e
    except requests.exceptions.ConnectionError as e:
        raise APIConnectionError(f"Failed to connect to API: {e}", details={"url": url}) from e
    except requests.exceptions.RequestException as e:
        raise APIConnectionError(f"API request failed: {e}", details={"url": url}) from e

    try:
        response.raise_for_status()
    except requests.exceptions.HTTPError as e:
        raise APIResponseError(
            f"API returned error status {response.status_code}",
            details={"url": url, "status_code": response.status_code, "response": response.text[:500]},
        ) from e

    if not response.content:
        return {}

    try:
        return response.json()
    except ValueError as e:
        raise APIResponseError("API returned invalid JSON", details={"url": url}) from e


def fetch_page(
    session: requests.Session,
    url: str,
    params: dict,
    headers: dict,
    timeout: int,
) -> dict | list:
    """Fetch a single page from the API."""
    return request_json(session, "GET", url, timeout=timeout, params=params, headers=headers)

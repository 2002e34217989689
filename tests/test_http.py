"""Tests for dataforge.http — shared session and JSON requests."""

from unittest.mock import MagicMock

import pytest
import requests
import responses

from dataforge.exceptions import APIConnectionError, APIResponseError, APITimeoutError
from dataforge.http import create_http_session, fetch_page, request_json

URL = "https://api.example.com/items"


class TestCreateHttpSession:
    def test_mounts_retrying_adapters(self):
        session = create_http_session(max_retries=5)
        adapter = session.get_adapter("https://api.example.com")
        assert adapter.max_retries.total == 5
        assert 429 in adapter.max_retries.status_forcelist

    def test_auth_attached(self):
        auth = MagicMock()
        assert create_http_session(auth=auth).auth is auth

    def test_allowed_methods(self):
        session = create_http_session(allowed_methods=("GET", "PUT"))
        retry = session.get_adapter("https://x").max_retries
        assert set(retry.allowed_methods) == {"GET", "PUT"}


class TestRequestJson:
    @responses.activate
    def test_returns_json(self):
        responses.add(responses.GET, URL, json={"results": [1]}, status=200)
        assert fetch_page(requests.Session(), URL, {"pageNum": 1}, {}, 10) == {"results": [1]}
        assert "pageNum=1" in responses.calls[0].request.url

    @responses.activate
    def test_empty_body_returns_empty_dict(self):
        responses.add(responses.PUT, URL, body=b"", status=200)
        assert request_json(requests.Session(), "PUT", URL, timeout=10, json_body={"a": 1}) == {}

    @responses.activate
    def test_error_status_raises_response_error(self):
        responses.add(responses.GET, URL, json={"error": "nope"}, status=404)
        with pytest.raises(APIResponseError, match="404"):
            request_json(requests.Session(), "GET", URL, timeout=10)

    @responses.activate
    def test_invalid_json_raises_response_error(self):
        responses.add(responses.GET, URL, body="<html>", status=200)
        with pytest.raises(APIResponseError, match="invalid JSON"):
            request_json(requests.Session(), "GET", URL, timeout=10)

    def test_timeout_raises_timeout_error_without_retry(self):
        session = MagicMock()
        session.request.side_effect = requests.exceptions.Timeout("slow")
        with pytest.raises(APITimeoutError):
            request_json(session, "GET", URL, timeout=1)
        assert session.request.call_count == 1

    def test_connection_error_raised_after_one_attempt(self):
        session = MagicMock()
        session.request.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(APIConnectionError):
            request_json(session, "GET", URL, timeout=1)
        assert session.request.call_count == 1


class TestSessionRetryPolicy:
    def test_connection_failures_not_retried(self):
        retry = create_http_session(max_retries=5).get_adapter("https://x").max_retries
        assert retry.connect == 0
        assert retry.read == 0

    @responses.activate
    def test_one_request_per_failed_call(self):
        responses.add(responses.GET, URL, body=requests.exceptions.ConnectionError("refused"))
        with pytest.raises(APIConnectionError):
            fetch_page(create_http_session(), URL, {"pageNum": 1}, {}, 10)
        assert len(responses.calls) == 1

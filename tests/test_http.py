"""Summary: Tests for the urllib-based HTTP client.

Importance: Every provider and LLM call relies on its timeout capping and error mapping.
Alternatives: Exercise the client only through a live local server.
"""

from __future__ import annotations

import io
import json
import time
import urllib.error
import urllib.parse

import pytest

from mailharvest.errors import DeadlineExceededError, HttpStatusError, MalformedResponseError, UpstreamError
from mailharvest.http import Deadline, HttpClient


class _Response:
    def __init__(self, body: bytes) -> None:
        self._body = body

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> "_Response":
        return self

    def __exit__(self, *exc_info) -> None:
        return None


class _Urlopen:
    """Records each request and answers with bytes, or raises a prepared exception."""

    def __init__(self, body: bytes = b"{}", error: Exception | None = None, delay: float = 0.0) -> None:
        self.body = body
        self.error = error
        self.delay = delay
        self.requests: list = []
        self.timeouts: list[float] = []

    def __call__(self, request, timeout: float):
        self.requests.append(request)
        self.timeouts.append(timeout)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return _Response(self.body)


@pytest.fixture
def urlopen(monkeypatch: pytest.MonkeyPatch) -> _Urlopen:
    fake = _Urlopen()
    monkeypatch.setattr("urllib.request.urlopen", fake)
    return fake


def test_get_json_parses_object(urlopen: _Urlopen) -> None:
    urlopen.body = b'{"id": "m1", "labels": ["INBOX"]}'
    result = HttpClient(timeout=7.0).get_json("https://api.test/items", headers={"Authorization": "Bearer t"})
    assert result == {"id": "m1", "labels": ["INBOX"]}
    (request,) = urlopen.requests
    assert request.get_method() == "GET"
    assert request.full_url == "https://api.test/items"
    assert request.get_header("Authorization") == "Bearer t"
    assert urlopen.timeouts == [7.0]


def test_timeout_capped_by_deadline(urlopen: _Urlopen) -> None:
    """Summary: A call never waits longer than the time left on its deadline.

    Importance: The request-level deadline must bound every outbound call it triggers.
    Alternatives: Apply the fixed per-call timeout and check the deadline afterwards.
    """

    client = HttpClient(timeout=30.0)
    client.get_json("https://api.test/a", deadline=Deadline.after(2.0))
    client.get_json("https://api.test/b", deadline=Deadline.after(60.0), timeout=5.0)
    assert 0 < urlopen.timeouts[0] <= 2.0
    assert urlopen.timeouts[1] == 5.0


def test_expired_deadline_fails_before_sending(urlopen: _Urlopen) -> None:
    with pytest.raises(DeadlineExceededError):
        HttpClient().get_json("https://api.test/a", deadline=Deadline(expires_at=time.monotonic() - 1))
    assert urlopen.requests == []


def test_post_form_encodes_payload(urlopen: _Urlopen) -> None:
    urlopen.body = b'{"access_token": "a"}'
    result = HttpClient().post_form("https://auth.test/token", {"grant_type": "authorization_code", "code": "c d"})
    assert result == {"access_token": "a"}
    (request,) = urlopen.requests
    assert request.get_method() == "POST"
    assert request.get_header("Content-type") == "application/x-www-form-urlencoded"
    assert urllib.parse.parse_qs(request.data.decode("utf-8")) == {
        "grant_type": ["authorization_code"],
        "code": ["c d"],
    }


def test_post_json_encodes_payload(urlopen: _Urlopen) -> None:
    urlopen.body = b'{"response": "ok"}'
    HttpClient().post_json("http://ollama.test/api/generate", {"model": "llama2", "stream": False})
    (request,) = urlopen.requests
    assert request.get_header("Content-type") == "application/json"
    assert json.loads(request.data) == {"model": "llama2", "stream": False}


def test_empty_body_is_empty_object(urlopen: _Urlopen) -> None:
    urlopen.body = b""
    assert HttpClient().post_form("https://auth.test/revoke", {"token": "t"}) == {}


@pytest.mark.parametrize("body", [b"[1, 2]", b'"text"', b"not json", b"{broken"])
def test_non_object_body_is_malformed(urlopen: _Urlopen, body: bytes) -> None:
    urlopen.body = body
    with pytest.raises(MalformedResponseError):
        HttpClient().get_json("https://api.test/items")


def test_http_error_maps_to_status_error(urlopen: _Urlopen) -> None:
    """Summary: Non-2xx responses keep their status code and body.

    Importance: Callers turn 401 into re-authentication and report other codes as upstream failures.
    Alternatives: Raise a generic upstream error without the status.
    """

    urlopen.error = urllib.error.HTTPError(
        "https://api.test/items", 401, "Unauthorized", {}, io.BytesIO(b'{"error": "invalid_token"}')
    )
    with pytest.raises(HttpStatusError) as excinfo:
        HttpClient().get_json("https://api.test/items")
    assert excinfo.value.status == 401
    assert excinfo.value.url == "https://api.test/items"
    assert excinfo.value.body == '{"error": "invalid_token"}'


def test_http_error_without_body_uses_reason(urlopen: _Urlopen) -> None:
    urlopen.error = urllib.error.HTTPError("https://api.test/items", 503, "Service Unavailable", {}, io.BytesIO(b""))
    with pytest.raises(HttpStatusError) as excinfo:
        HttpClient().get_json("https://api.test/items")
    assert excinfo.value.status == 503
    assert excinfo.value.body == "Service Unavailable"


def test_connection_failure_is_upstream_error(urlopen: _Urlopen) -> None:
    urlopen.error = urllib.error.URLError(ConnectionRefusedError(111, "Connection refused"))
    with pytest.raises(UpstreamError) as excinfo:
        HttpClient().post_json("http://ollama.test/api/generate", {"prompt": "hi"})
    assert not isinstance(excinfo.value, (HttpStatusError, DeadlineExceededError))
    assert "Connection refused" in str(excinfo.value)


def test_socket_timeout_without_deadline_is_upstream_error(urlopen: _Urlopen) -> None:
    urlopen.error = TimeoutError("timed out")
    with pytest.raises(UpstreamError) as excinfo:
        HttpClient().get_json("https://api.test/slow")
    assert not isinstance(excinfo.value, DeadlineExceededError)
    assert "timed out" in str(excinfo.value)


@pytest.mark.parametrize("error", [TimeoutError("timed out"), urllib.error.URLError(TimeoutError("timed out"))])
def test_timeout_past_deadline_is_deadline_exceeded(urlopen: _Urlopen, error: Exception) -> None:
    urlopen.error = error
    urlopen.delay = 0.1
    with pytest.raises(DeadlineExceededError):
        HttpClient().get_json("https://api.test/slow", deadline=Deadline.after(0.05))


def test_timeout_before_deadline_is_upstream_error(urlopen: _Urlopen) -> None:
    urlopen.error = TimeoutError("timed out")
    with pytest.raises(UpstreamError) as excinfo:
        HttpClient(timeout=1.0).get_json("https://api.test/slow", deadline=Deadline.after(60.0))
    assert not isinstance(excinfo.value, DeadlineExceededError)

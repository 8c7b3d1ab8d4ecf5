"""Summary: Shared fixtures for mailharvest tests.

Importance: Keeps provider and LLM calls offline by routing them through a recording fake.
Alternatives: Patch urllib.request.urlopen in every test module.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable

import pytest

from mailharvest.app import AppServices, build_services
from mailharvest.config import AppConfig


@dataclass(frozen=True)
class RecordedCall:
    method: str
    url: str
    body: Any
    headers: dict[str, str] | None


class FakeHttp:
    """Summary: Drop-in HttpClient replacement that answers from registered routes.

    Importance: Lets tests assert on outbound requests without a network.
    Alternatives: Run a local HTTP server per test.
    """

    def __init__(self) -> None:
        self.calls: list[RecordedCall] = []
        self._routes: list[tuple[str, str, Any]] = []
        self._lock = threading.Lock()

    def on(self, method: str, url_prefix: str, response: Any) -> None:
        """Register a response, an exception, or a callable(url, body) for a URL prefix.

        The most recently registered matching route wins.
        """

        self._routes.append((method, url_prefix, response))

    def calls_to(self, url_prefix: str) -> list[RecordedCall]:
        return [call for call in self.calls if call.url.startswith(url_prefix)]

    def get_json(self, url, headers=None, deadline=None, timeout=None):
        return self._handle("GET", url, None, headers, deadline)

    def post_form(self, url, payload, deadline=None, timeout=None):
        return self._handle("POST", url, payload, None, deadline)

    def post_json(self, url, payload, deadline=None, timeout=None):
        return self._handle("POST", url, payload, None, deadline)

    def _handle(self, method, url, body, headers, deadline):
        if deadline is not None:
            deadline.check()
        with self._lock:
            self.calls.append(RecordedCall(method=method, url=url, body=copy.deepcopy(body), headers=headers))
            routes = list(reversed(self._routes))
        for route_method, prefix, response in routes:
            if route_method == method and url.startswith(prefix):
                if callable(response) and not isinstance(response, type):
                    response = response(url, body)
                if isinstance(response, Exception):
                    raise response
                return copy.deepcopy(response)
        raise AssertionError(f"Unexpected {method} {url}")


def build_config(tmp_path: Path, **overrides: Any) -> AppConfig:
    config = AppConfig(
        store_backend="memory",
        db_path=str(tmp_path / "test.db"),
        ai_provider="ollama",
        ollama_url="http://ollama.test",
        ollama_model="llama2",
        llm_temperature=0.7,
        llm_top_p=0.9,
        llm_top_k=40,
        api_host="127.0.0.1",
        api_port=8080,
        api_key="",
        google_client_id="google-client",
        google_client_secret="google-secret",
        microsoft_client_id="ms-client",
        microsoft_client_secret="ms-secret",
        oauth_redirect_uri="http://localhost:8080/api/accounts/callback",
        google_auth_url="https://accounts.google.com/o/oauth2/v2/auth",
        google_token_url="https://oauth2.googleapis.com/token",
        google_userinfo_url="https://www.googleapis.com/oauth2/v2/userinfo",
        google_api_base_url="https://gmail.googleapis.com/gmail/v1",
        microsoft_auth_url="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        microsoft_token_url="https://login.microsoftonline.com/common/oauth2/v2.0/token",
        microsoft_graph_base_url="https://graph.microsoft.com/v1.0",
        handshake_ttl_seconds=600,
        token_refresh_margin_seconds=300,
        ingest_batch_size=50,
        http_timeout_seconds=10.0,
        llm_timeout_seconds=120.0,
        request_timeout_seconds=180.0,
        token_secret="secret",
        log_level="INFO",
    )
    return replace(config, **overrides)


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., AppConfig]:
    return lambda **overrides: build_config(tmp_path, **overrides)


@pytest.fixture
def config(make_config: Callable[..., AppConfig]) -> AppConfig:
    return make_config()


@pytest.fixture
def fake_http() -> FakeHttp:
    return FakeHttp()


@pytest.fixture(params=["memory", "sqlite"])
def services(
    request: pytest.FixtureRequest, make_config: Callable[..., AppConfig], fake_http: FakeHttp
) -> AppServices:
    """Summary: Services over each store variant, sharing the recording HTTP fake.

    Importance: Service and API behavior must not depend on which store is configured.
    Alternatives: Run the service tests against the memory store only.
    """

    return build_services(make_config(store_backend=request.param), http=fake_http)

"""Summary: API integration tests.

Importance: Validates FastAPI endpoints against core workflows.
Alternatives: Use manual curl testing only.
"""

from __future__ import annotations

import base64
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

from mailharvest.api import create_app, status_for
from mailharvest.app import AppServices, build_services
from mailharvest.config import AppConfig
from mailharvest.errors import (
    DeadlineExceededError,
    DuplicateRecordError,
    HttpStatusError,
    MalformedResponseError,
    NotFoundError,
)
from mailharvest.models import Account, Message, new_id


def _client(config: AppConfig, services: AppServices) -> TestClient:
    return TestClient(create_app(config, services=services))


@pytest.fixture
def client(config: AppConfig, services: AppServices) -> TestClient:
    return _client(config, services)


def _seed_account(services: AppServices, email: str = "user@gmail.com") -> str:
    return services.store.create_account(
        Account(provider="gmail", email=email, access_token="secret-access", refresh_token="secret-refresh")
    )


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_connect_account_over_http(client: TestClient, config: AppConfig, fake_http) -> None:
    """Summary: Start a handshake, follow the callback, and read the account back.

    Importance: Confirms the HTTP layer wires into the account lifecycle without leaking tokens.
    Alternatives: Validate only the service-level workflow.
    """

    fake_http.on("POST", config.google_token_url, {"access_token": "a", "refresh_token": "r", "expires_in": 3600})
    fake_http.on("GET", config.google_userinfo_url, {"id": "g-1", "email": "user@gmail.com"})

    started = client.post("/api/accounts", json={"email": "user@gmail.com"})
    assert started.status_code == 200
    body = started.json()
    assert body["provider"] == "gmail"
    assert parse_qs(urlsplit(body["auth_url"]).query)["state"] == [body["state"]]

    callback = client.get("/api/accounts/callback", params={"code": "c", "state": body["state"]})
    assert callback.status_code == 200
    account = callback.json()
    assert account["email"] == "user@gmail.com"
    assert "access_token" not in account and "refresh_token" not in account

    replay = client.get("/api/accounts/callback", params={"code": "c", "state": body["state"]})
    assert replay.status_code == 400
    assert replay.json()["error"] == "invalid_state"

    listed = client.get("/api/accounts").json()
    assert listed["total"] == 1
    assert listed["accounts"][0]["id"] == account["id"]
    assert client.get(f"/api/accounts/{account['id']}").json()["provider"] == "gmail"


def test_callback_identity_mismatch_is_401(client: TestClient, config: AppConfig, fake_http) -> None:
    fake_http.on("POST", config.google_token_url, {"access_token": "a", "expires_in": 3600})
    fake_http.on("GET", config.google_userinfo_url, {"id": "g-2", "email": "someone-else@gmail.com"})
    state = client.post("/api/accounts", json={"email": "user@gmail.com"}).json()["state"]
    response = client.get("/api/accounts/callback", params={"code": "c", "state": state})
    assert response.status_code == 401
    assert response.json()["error"] == "auth_error"


def test_api_key_guard(make_config, fake_http) -> None:
    """Summary: Routes under /api require the configured key; health and callback do not.

    Importance: Adds a minimal access guard for local and private deployments.
    Alternatives: Use OAuth or session-based authentication.
    """

    config = make_config(api_key="k3y")
    client = _client(config, build_services(config, http=fake_http))

    denied = client.get("/api/accounts")
    assert denied.status_code == 401
    assert denied.json()["error"] == "auth_error"
    assert client.get("/api/accounts", headers={"X-API-Key": "wrong"}).status_code == 401
    assert client.get("/api/accounts", headers={"X-API-Key": "k3y"}).status_code == 200
    assert client.get("/health").status_code == 200
    # Reaches the handler and fails on the unknown state, not on the key.
    assert client.get("/api/accounts/callback", params={"code": "c", "state": "s"}).status_code == 400


def test_account_patch_and_delete(client: TestClient, services: AppServices) -> None:
    account_id = _seed_account(services)
    services.store.create_message(Message(account_id=account_id, provider_message_id="m1"))

    patched = client.patch(f"/api/accounts/{account_id}", json={"active": False})
    assert patched.status_code == 200
    assert patched.json()["active"] is False

    deleted = client.delete(f"/api/accounts/{account_id}")
    assert deleted.status_code == 204
    assert client.get(f"/api/accounts/{account_id}").status_code == 404
    assert client.get("/api/emails").json()["total"] == 0


def test_ingest_over_http(client: TestClient, services: AppServices, config: AppConfig, fake_http) -> None:
    account_id = _seed_account(services)
    base = config.google_api_base_url
    data = base64.urlsafe_b64encode(b"Hello from API").decode("ascii").rstrip("=")
    fake_http.on("GET", f"{base}/users/me/messages?", {"messages": [{"id": "api-1"}]})
    fake_http.on(
        "GET",
        f"{base}/users/me/messages/api-1?",
        {
            "id": "api-1",
            "payload": {
                "mimeType": "text/plain",
                "headers": [{"name": "Subject", "value": "Hello"}, {"name": "From", "value": "from@example.com"}],
                "body": {"data": data},
            },
        },
    )

    response = client.post(f"/api/accounts/{account_id}/ingest")
    assert response.status_code == 200
    assert response.json() == {"account_id": account_id, "fetched": 1, "created": 1, "skipped": 0, "failures": []}

    listed = client.get("/api/emails", params={"account_id": account_id}).json()
    assert listed["total"] == 1
    assert listed["emails"][0]["from"] == "from@example.com"
    assert listed["emails"][0]["body"] == "Hello from API"


def test_list_emails_filters_and_pagination(client: TestClient, services: AppServices) -> None:
    account_id = _seed_account(services)
    for index in range(3):
        services.store.create_message(
            Message(
                account_id=account_id,
                provider_message_id=f"m{index}",
                sender=f"sender{index}@example.com",
                subject="Invoice" if index == 1 else "Hello",
                received_at=None,
            )
        )

    page = client.get("/api/emails", params={"page": 2, "limit": 2}).json()
    assert (page["total"], page["page"], page["limit"], len(page["emails"])) == (3, 2, 2, 1)
    filtered = client.get("/api/emails", params={"subject": "invoice"}).json()
    assert [email["provider_message_id"] for email in filtered["emails"]] == ["m1"]

    assert client.get("/api/emails", params={"limit": 0}).status_code == 400
    assert client.get("/api/emails", params={"limit": 101}).status_code == 400
    assert client.get("/api/emails", params={"account_id": "bogus"}).status_code == 400
    bad_range = client.get(
        "/api/emails", params={"start_date": "2026-02-01T00:00:00Z", "end_date": "2026-01-01T00:00:00Z"}
    )
    assert bad_range.status_code == 400
    assert bad_range.json()["error"] == "validation_error"


def test_email_patch_and_delete(client: TestClient, services: AppServices) -> None:
    account_id = _seed_account(services)
    message_id = services.store.create_message(Message(account_id=account_id, provider_message_id="m1"))

    patched = client.patch(
        f"/api/emails/{message_id}", json={"read": True, "labels": ["Work", "work", " Travel "]}
    )
    assert patched.status_code == 200
    assert patched.json()["read"] is True
    assert patched.json()["starred"] is False
    assert patched.json()["labels"] == ["Work", "Travel"]

    assert client.delete(f"/api/emails/{message_id}").status_code == 204
    missing = client.get(f"/api/emails/{message_id}")
    assert missing.status_code == 404
    assert missing.json()["error"] == "not_found"
    assert client.delete(f"/api/emails/{message_id}").status_code == 404


def test_summarize_and_entities_over_http(client: TestClient, services: AppServices, fake_http) -> None:
    account_id = _seed_account(services)
    message_id = services.store.create_message(
        Message(account_id=account_id, provider_message_id="m1", body="Alice says hi")
    )
    fake_http.on("POST", "http://ollama.test/api/generate", {"response": "Greeting"})
    assert client.post(f"/api/emails/{message_id}/summarize").json() == {"summary": "Greeting"}

    fake_http.on(
        "POST",
        "http://ollama.test/api/generate",
        {"response": '[{"text": "Alice", "type": "PERSON", "start_pos": 0, "end_pos": 5, "confidence": 0.9}]'},
    )
    entities = client.post(f"/api/emails/{message_id}/entities").json()["entities"]
    assert entities == [{"text": "Alice", "type": "PERSON", "start_pos": 0, "end_pos": 5, "confidence": 0.9}]
    stored = client.get(f"/api/emails/{message_id}").json()
    assert stored["summary"] == "Greeting"
    assert stored["entities"] == entities


def test_upstream_failures_map_to_502(client: TestClient, services: AppServices, fake_http) -> None:
    account_id = _seed_account(services)
    message_id = services.store.create_message(Message(account_id=account_id, provider_message_id="m1"))
    url = "http://ollama.test/api/generate"
    fake_http.on("POST", url, HttpStatusError(url, 500, "model crashed"))
    response = client.post(f"/api/emails/{message_id}/summarize")
    assert response.status_code == 502
    assert response.json()["error"] == "upstream_error"

    fake_http.on("POST", url, {"response": "no json here"})
    malformed = client.post(f"/api/emails/{message_id}/entities")
    assert malformed.status_code == 502
    assert malformed.json()["error"] == "malformed_response"


@pytest.mark.parametrize(
    ("error", "status"),
    [
        (DeadlineExceededError("late"), 504),
        (MalformedResponseError("bad"), 502),
        (NotFoundError("gone"), 404),
        (DuplicateRecordError("dup"), 500),
    ],
)
def test_status_mapping(error, status: int) -> None:
    assert status_for(error) == status


def test_unknown_ids_are_404(client: TestClient) -> None:
    assert client.get(f"/api/accounts/{new_id()}").status_code == 404
    assert client.post(f"/api/emails/{new_id()}/summarize").status_code == 404
    assert client.post(f"/api/accounts/{new_id()}/ingest").status_code == 404

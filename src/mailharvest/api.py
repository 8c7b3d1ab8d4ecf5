"""Summary: FastAPI application for mailharvest.

Importance: Exposes account, ingestion, message, and analysis operations over HTTP.
Alternatives: Use a CLI-only workflow or a different web framework.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Header, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from mailharvest.app import AppServices, build_services
from mailharvest.config import AppConfig
from mailharvest.errors import (
    AuthError,
    DeadlineExceededError,
    InvalidStateError,
    MailHarvestError,
    NotFoundError,
    StorageError,
    UpstreamError,
    ValidationError,
)
from mailharvest.http import Deadline
from mailharvest.models import Account, Entity, Message, MessageFilter
from mailharvest.services import IngestReport


logger = logging.getLogger(__name__)

# Ordered so subclasses win over their parents.
_STATUS_BY_ERROR: list[tuple[type[MailHarvestError], int]] = [
    (DeadlineExceededError, 504),
    (NotFoundError, 404),
    (ValidationError, 400),
    (InvalidStateError, 400),
    (AuthError, 401),
    (UpstreamError, 502),
    (StorageError, 500),
]


class AccountCreateRequest(BaseModel):
    """Summary: Request payload for starting an OAuth handshake.

    Importance: The provider is optional and inferred from well-known domains when absent.
    Alternatives: Use separate endpoints per provider.
    """

    email: str = Field(min_length=3, max_length=320)
    provider: str | None = None


class AccountUpdateRequest(BaseModel):
    active: bool


class MessageUpdateRequest(BaseModel):
    """Summary: Request payload for changing message flags.

    Importance: Only read, starred, and labels are user-editable.
    Alternatives: Accept a full message document.
    """

    read: bool | None = None
    starred: bool | None = None
    labels: list[str] | None = None


def status_for(exc: MailHarvestError) -> int:
    """Map an error to its HTTP status code."""

    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def create_app(config: AppConfig, services: AppServices | None = None) -> FastAPI:
    """Summary: Create a FastAPI app wired to mailharvest services.

    Importance: Ensures the API layer shares the same configuration and storage.
    Alternatives: Instantiate services globally outside the factory.
    """

    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=getattr(logging, config.log_level.upper(), logging.INFO),
            format="%(levelname)s %(name)s: %(message)s",
        )
    app = FastAPI(title="mailharvest API", version="0.1.0")
    services = services or build_services(config)
    app.state.services = services

    def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
        """Summary: Enforce API key authentication when configured.

        Importance: Adds a minimal access guard for local and private deployments.
        Alternatives: Use OAuth or session-based authentication.
        """

        if not config.api_key:
            return
        if x_api_key != config.api_key:
            raise AuthError("Invalid API key")

    def request_deadline() -> Deadline:
        return Deadline.after(config.request_timeout_seconds)

    @app.exception_handler(MailHarvestError)
    def handle_error(request: Request, exc: MailHarvestError) -> JSONResponse:
        status = status_for(exc)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        else:
            logger.warning("%s %s rejected: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content={"error": exc.kind, "detail": str(exc)})

    @app.get("/health")
    def health() -> dict[str, str]:
        """Summary: Health check endpoint.

        Importance: Supports uptime checks in local and cloud deployments.
        Alternatives: Use a metrics endpoint only.
        """

        return {"status": "ok"}

    @app.get("/api/accounts/callback")
    def oauth_callback(
        code: str, state: str, deadline: Deadline = Depends(request_deadline)
    ) -> dict[str, Any]:
        """Summary: Complete an OAuth handshake and return the connected account.

        Importance: The provider redirects the browser here, so the API key guard does not apply;
        the single-use state is the credential.
        Alternatives: Redirect to a frontend page that posts the code back.
        """

        account = services.accounts.complete_handshake(code, state, deadline=deadline)
        return _account_payload(account)

    router = APIRouter(prefix="/api", dependencies=[Depends(require_api_key)])

    @router.post("/accounts")
    def start_handshake(payload: AccountCreateRequest) -> dict[str, str]:
        """Summary: Start connecting a mailbox.

        Importance: Returns the provider URL the user must visit to grant access.
        Alternatives: Redirect immediately instead of returning the URL.
        """

        started = services.accounts.start_handshake(payload.email, payload.provider)
        return {"state": started.state, "auth_url": started.auth_url, "provider": started.provider}

    @router.get("/accounts")
    def list_accounts(page: int = 1, limit: int = 20) -> dict[str, Any]:
        accounts, total = services.accounts.list_accounts(page, limit)
        return {
            "accounts": [_account_payload(account) for account in accounts],
            "total": total,
            "page": page,
            "limit": limit,
        }

    @router.get("/accounts/{account_id}")
    def get_account(account_id: str) -> dict[str, Any]:
        return _account_payload(services.accounts.get_account(account_id))

    @router.patch("/accounts/{account_id}")
    def update_account(account_id: str, payload: AccountUpdateRequest) -> dict[str, Any]:
        return _account_payload(services.accounts.set_active(account_id, payload.active))

    @router.delete("/accounts/{account_id}", status_code=204)
    def delete_account(account_id: str) -> Response:
        services.accounts.delete_account(account_id)
        return Response(status_code=204)

    @router.post("/accounts/{account_id}/ingest")
    def ingest_account(account_id: str, deadline: Deadline = Depends(request_deadline)) -> dict[str, Any]:
        """Summary: Pull recent messages for an account.

        Importance: Reports new, skipped, and failed messages separately.
        Alternatives: Schedule ingestion in a background worker.
        """

        report = services.ingestion.ingest(account_id, deadline=deadline)
        return _report_payload(report)

    @router.get("/emails")
    def list_messages(
        account_id: str | None = None,
        sender: str | None = None,
        recipient: str | None = None,
        subject: str | None = None,
        label: str | None = None,
        read: bool | None = None,
        starred: bool | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict[str, Any]:
        """Summary: List stored messages with optional filters.

        Importance: String filters are case-insensitive substring matches.
        Alternatives: Expose a full query language.
        """

        filters = MessageFilter(
            account_id=account_id or None,
            sender=sender or None,
            recipient=recipient or None,
            subject=subject or None,
            label=label or None,
            read=read,
            starred=starred,
            start_date=_as_utc(start_date),
            end_date=_as_utc(end_date),
        )
        messages, total = services.messages.list_messages(filters, page, limit)
        return {
            "emails": [_message_payload(message) for message in messages],
            "total": total,
            "page": page,
            "limit": limit,
        }

    @router.get("/emails/{message_id}")
    def get_message(message_id: str) -> dict[str, Any]:
        return _message_payload(services.messages.get_message(message_id))

    @router.patch("/emails/{message_id}")
    def update_message(message_id: str, payload: MessageUpdateRequest) -> dict[str, Any]:
        message = services.messages.update_flags(
            message_id, read=payload.read, starred=payload.starred, labels=payload.labels
        )
        return _message_payload(message)

    @router.delete("/emails/{message_id}", status_code=204)
    def delete_message(message_id: str) -> Response:
        services.messages.delete_message(message_id)
        return Response(status_code=204)

    @router.post("/emails/{message_id}/summarize")
    def summarize_message(message_id: str, deadline: Deadline = Depends(request_deadline)) -> dict[str, str]:
        """Summary: Summarize a message with the configured LLM.

        Importance: Blocks for the full generation; the request deadline bounds it.
        Alternatives: Queue summarization and poll for the result.
        """

        return {"summary": services.analysis.summarize(message_id, deadline=deadline)}

    @router.post("/emails/{message_id}/entities")
    def extract_entities(message_id: str, deadline: Deadline = Depends(request_deadline)) -> dict[str, Any]:
        entities = services.analysis.extract_entities(message_id, deadline=deadline)
        return {"entities": [_entity_payload(entity) for entity in entities]}

    app.include_router(router)
    return app


def _account_payload(account: Account) -> dict[str, Any]:
    """Serialize an account without its tokens."""

    return {
        "id": account.id,
        "provider": account.provider,
        "email": account.email,
        "active": account.active,
        "token_expiry": _iso(account.token_expiry),
        "created_at": _iso(account.created_at),
        "updated_at": _iso(account.updated_at),
        "last_sync_at": _iso(account.last_sync_at),
    }


def _message_payload(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "account_id": message.account_id,
        "provider_message_id": message.provider_message_id,
        "thread_id": message.thread_id,
        "from": message.sender,
        "to": message.to,
        "cc": message.cc,
        "bcc": message.bcc,
        "subject": message.subject,
        "body": message.body,
        "html_body": message.html_body,
        "labels": message.labels,
        "read": message.read,
        "starred": message.starred,
        "received_at": _iso(message.received_at),
        "summary": message.summary,
        "entities": [_entity_payload(entity) for entity in message.entities]
        if message.entities is not None
        else None,
        "created_at": _iso(message.created_at),
        "updated_at": _iso(message.updated_at),
    }


def _entity_payload(entity: Entity) -> dict[str, Any]:
    return {
        "text": entity.text,
        "type": entity.type,
        "start_pos": entity.start,
        "end_pos": entity.end,
        "confidence": entity.confidence,
    }


def _report_payload(report: IngestReport) -> dict[str, Any]:
    return {
        "account_id": report.account_id,
        "fetched": report.fetched,
        "created": report.created,
        "skipped": report.skipped,
        "failures": [
            {"provider_message_id": failure.provider_message_id, "error": failure.error}
            for failure in report.failures
        ],
    }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

"""Summary: Core application services for mailharvest.

Importance: Orchestrates the OAuth account lifecycle, ingestion with deduplication, and LLM analysis.
Alternatives: Build a full service layer with a dependency injection framework.
"""

from __future__ import annotations

import logging
import threading
import weakref
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Callable

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as SchemaError

from mailharvest.ai import AiProvider
from mailharvest.email import MailboxClient
from mailharvest.errors import (
    AuthError,
    DeadlineExceededError,
    DuplicateRecordError,
    MalformedResponseError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from mailharvest.handshake import HandshakeStateStore
from mailharvest.http import Deadline
from mailharvest.models import (
    Account,
    Entity,
    Message,
    MessageFilter,
    utcnow,
    validate_id,
    validate_provider,
)
from mailharvest.oauth import TokenGateway, infer_provider
from mailharvest.storage.base import Store


logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

SUMMARY_PROMPT = """Summarize the following email concisely, keeping the key points and any requested actions.

Subject: {subject}
From: {sender}
To: {recipients}

{body}

Summary:"""

ENTITY_PROMPT = """Identify the named entities in the following email. For each entity give:
1. the entity text
2. the entity type (PERSON, ORGANIZATION, LOCATION, DATE, TIME, MONEY, PERCENT, etc.)
3. the start and end character positions in the text
4. a confidence score between 0 and 1

Respond with only a JSON array of objects shaped like:
[
  {{
    "text": "entity text",
    "type": "entity type",
    "start_pos": start_position,
    "end_pos": end_position,
    "confidence": confidence_score
  }}
]

Email:
{body}

Entities:"""


class KeyedLock:
    """Summary: Lazily created lock per key.

    Importance: Serializes token refresh, deletion, and ingestion writes per account without
    blocking other accounts. A lock lives only while some caller holds a reference to it.
    Alternatives: A single global lock around every refresh.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()

    def for_key(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


@dataclass(frozen=True)
class HandshakeStart:
    """Result of starting an OAuth handshake."""

    state: str
    auth_url: str
    provider: str


@dataclass(frozen=True)
class AccountService:
    """Summary: Owns connected accounts and their OAuth tokens.

    Importance: Upserts accounts from verified handshakes and keeps access tokens fresh.
    Alternatives: Store tokens per request and re-run OAuth when they expire.
    """

    store: Store
    gateways: dict[str, TokenGateway]
    handshakes: HandshakeStateStore
    refresh_margin_seconds: int = 300
    refresh_locks: KeyedLock = field(default_factory=KeyedLock)

    def start_handshake(self, email: str, provider: str | None = None) -> HandshakeStart:
        """Summary: Begin an OAuth handshake for an email address.

        Importance: Records a single-use state so the callback can be tied back to this email.
        Alternatives: Trust the callback without correlating it to a prior request.
        """

        normalized = _normalize_email(email)
        resolved = validate_provider(provider) if provider else infer_provider(normalized)
        gateway = self._gateway(resolved)
        state = self.handshakes.register(normalized, resolved)
        logger.info("Started %s handshake.", resolved)
        return HandshakeStart(state=state, auth_url=gateway.build_auth_url(state), provider=resolved)

    def complete_handshake(self, code: str, state: str, deadline: Deadline | None = None) -> Account:
        """Summary: Finish an OAuth handshake and upsert the account.

        Importance: The authenticated identity must match the email that started the handshake.
        Alternatives: Infer the account from the authenticated identity alone.
        """

        if not code or not state:
            raise ValidationError("Both code and state are required")
        pending = self.handshakes.consume(state)
        gateway = self._gateway(pending.provider)
        tokens = gateway.exchange_code(code, deadline=deadline)
        identity = gateway.fetch_user_info(tokens.access_token, deadline=deadline)
        if identity.email.strip().lower() != pending.email:
            logger.warning("Rejected %s handshake: authenticated identity does not match.", pending.provider)
            raise AuthError(
                f"Authenticated {pending.provider} account does not match {pending.email}",
                provider=pending.provider,
            )

        existing = self.store.get_account_by_email(pending.email, pending.provider)
        if existing is None:
            account = Account(
                provider=pending.provider,
                email=pending.email,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token or "",
                token_expiry=tokens.expires_at,
            )
            try:
                account_id = self.store.create_account(account)
            except DuplicateRecordError:
                # Lost a race with a concurrent callback for the same mailbox.
                existing = self.store.get_account_by_email(pending.email, pending.provider)
                if existing is None:
                    raise
            else:
                logger.info("Created %s account %s.", pending.provider, account_id)
                return self._require_account(account_id)

        updated = replace(
            existing,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token or existing.refresh_token,
            token_expiry=tokens.expires_at,
            last_sync_at=utcnow(),
        )
        self.store.update_account(updated)
        logger.info("Re-authenticated %s account %s.", pending.provider, existing.id)
        return self._require_account(existing.id)

    def ensure_fresh_token(self, account: Account, deadline: Deadline | None = None) -> Account:
        """Summary: Refresh the access token when it is close to expiry.

        Importance: At most one refresh runs per account; waiters reuse its result.
        Alternatives: Refresh unconditionally before every ingestion pass.
        """

        if not self._needs_refresh(account):
            return account
        with self.refresh_locks.for_key(account.id):
            current = self._require_account(account.id)
            if not self._needs_refresh(current):
                return current
            if not current.refresh_token:
                raise AuthError(
                    f"Account {current.id} has no refresh token; re-authenticate",
                    provider=current.provider,
                )
            tokens = self._gateway(current.provider).refresh_token(current.refresh_token, deadline=deadline)
            refreshed = replace(
                current,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token or current.refresh_token,
                token_expiry=tokens.expires_at,
            )
            if not self.store.update_account(refreshed):
                raise NotFoundError(f"Account {current.id} not found")
            logger.info("Refreshed %s token for account %s.", current.provider, current.id)
            return self._require_account(current.id)

    def mark_synced(self, account_id: str) -> Account:
        """Stamp the last-sync time without racing a concurrent token refresh."""

        with self.refresh_locks.for_key(account_id):
            current = self._require_account(account_id)
            self.store.update_account(replace(current, last_sync_at=utcnow()))
            return self._require_account(account_id)

    def list_accounts(self, page: int = 1, limit: int = 20) -> tuple[list[Account], int]:
        _validate_page(page, limit)
        return self.store.list_accounts(page, limit)

    def get_account(self, account_id: str) -> Account:
        validate_id(account_id, "account id")
        return self._require_account(account_id)

    def set_active(self, account_id: str, active: bool) -> Account:
        """Summary: Enable or disable ingestion for an account.

        Importance: Lets operators pause a mailbox without deleting its messages.
        Alternatives: Delete and reconnect the account.
        """

        account = self.get_account(account_id)
        self.store.update_account(replace(account, active=active))
        logger.info("Set account %s active=%s.", account_id, active)
        return self._require_account(account_id)

    def delete_account(self, account_id: str) -> int:
        """Summary: Delete an account and every message it owns.

        Importance: Runs under the account lock so a concurrent ingestion pass cannot write
        messages after they have been removed.
        Alternatives: Soft-delete accounts and keep their messages.
        """

        validate_id(account_id, "account id")
        with self.refresh_locks.for_key(account_id):
            self._require_account(account_id)
            removed = self.store.delete_messages_for_account(account_id)
            if not self.store.delete_account(account_id):
                raise NotFoundError(f"Account {account_id} not found")
        logger.info("Deleted account %s and %s messages.", account_id, removed)
        return removed

    def _needs_refresh(self, account: Account) -> bool:
        if account.token_expiry is None:
            return False
        return utcnow() >= account.token_expiry - timedelta(seconds=self.refresh_margin_seconds)

    def _gateway(self, provider: str) -> TokenGateway:
        gateway = self.gateways.get(provider)
        if gateway is None:
            raise ValidationError(f"Unsupported provider: {provider!r}")
        return gateway

    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account


@dataclass(frozen=True)
class IngestFailure:
    """A message that could not be fetched or mapped."""

    provider_message_id: str
    error: str


@dataclass(frozen=True)
class IngestReport:
    """Summary: Outcome of one ingestion pass.

    Importance: Separates newly stored messages from skipped duplicates and failures.
    Alternatives: Return only the number of fetched messages.
    """

    account_id: str
    fetched: int
    created: int
    skipped: int
    failures: list[IngestFailure] = field(default_factory=list)


@dataclass(frozen=True)
class IngestionService:
    """Summary: Pulls recent provider messages into storage without duplicates.

    Importance: The (account, provider message id) key makes repeated passes idempotent.
    Alternatives: Use provider push notifications or history/delta sync.
    """

    store: Store
    accounts: AccountService
    mailbox_factory: Callable[[Account], MailboxClient]
    batch_size: int = 50

    def ingest(self, account_id: str, deadline: Deadline | None = None) -> IngestReport:
        """Summary: Run one ingestion pass for an account.

        Importance: Per-message failures are collected so one bad message never blocks the rest.
        Alternatives: Abort the pass on the first error.
        """

        account = self.accounts.get_account(account_id)
        if not account.active:
            raise ValidationError(f"Account {account_id} is inactive")
        account = self.accounts.ensure_fresh_token(account, deadline=deadline)
        client = self.mailbox_factory(account)
        refs = client.list_recent(self.batch_size, deadline=deadline)

        created = 0
        skipped = 0
        failures: list[IngestFailure] = []
        for ref in refs:
            if deadline is not None:
                deadline.check()
            if self.store.get_message_by_provider_id(account.id, ref.provider_message_id):
                skipped += 1
                continue
            try:
                message = client.load(ref, deadline=deadline)
            except (DeadlineExceededError, AuthError):
                raise
            except (UpstreamError, ValueError, TypeError, AttributeError) as exc:
                logger.warning(
                    "Skipping %s message %s: %s", account.provider, ref.provider_message_id, exc
                )
                failures.append(IngestFailure(provider_message_id=ref.provider_message_id, error=str(exc)))
                continue
            if not self._store_message(account.id, message):
                skipped += 1
                continue
            created += 1

        self.accounts.mark_synced(account.id)
        logger.info(
            "Ingested account %s: fetched=%s created=%s skipped=%s failed=%s.",
            account.id,
            len(refs),
            created,
            skipped,
            len(failures),
        )
        return IngestReport(
            account_id=account.id,
            fetched=len(refs),
            created=created,
            skipped=skipped,
            failures=failures,
        )

    def _store_message(self, account_id: str, message: Message) -> bool:
        # Holding the account lock keeps inserts and delete_account from interleaving.
        with self.accounts.refresh_locks.for_key(account_id):
            if self.store.get_account(account_id) is None:
                raise NotFoundError(f"Account {account_id} was deleted during ingestion")
            try:
                self.store.create_message(replace(message, account_id=account_id))
            except DuplicateRecordError:
                return False
        return True


@dataclass(frozen=True)
class MessageService:
    """Summary: Read and flag stored messages.

    Importance: Keeps id validation and not-found handling out of the API layer.
    Alternatives: Query the store directly from route handlers.
    """

    store: Store

    def list_messages(self, filters: MessageFilter, page: int = 1, limit: int = 20) -> tuple[list[Message], int]:
        _validate_page(page, limit)
        if filters.account_id:
            validate_id(filters.account_id, "account id")
        if filters.start_date and filters.end_date and filters.start_date > filters.end_date:
            raise ValidationError("start_date must not be after end_date")
        return self.store.list_messages(filters, page, limit)

    def get_message(self, message_id: str) -> Message:
        validate_id(message_id, "message id")
        message = self.store.get_message(message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        return message

    def update_flags(
        self,
        message_id: str,
        read: bool | None = None,
        starred: bool | None = None,
        labels: list[str] | None = None,
    ) -> Message:
        """Summary: Change read/starred flags or replace the label set.

        Importance: These are the only user-editable message fields.
        Alternatives: Accept a full message document and overwrite it.
        """

        message = self.get_message(message_id)
        changes: dict[str, object] = {}
        if read is not None:
            changes["read"] = read
        if starred is not None:
            changes["starred"] = starred
        if labels is not None:
            changes["labels"] = _dedupe_labels(labels)
        if changes:
            self.store.update_message(replace(message, **changes))
        return self.get_message(message_id)

    def delete_message(self, message_id: str) -> None:
        validate_id(message_id, "message id")
        if not self.store.delete_message(message_id):
            raise NotFoundError(f"Message {message_id} not found")


class EntityPayload(BaseModel):
    text: str
    type: str
    start_pos: int
    end_pos: int
    confidence: float


_ENTITY_LIST = TypeAdapter(list[EntityPayload])


@dataclass(frozen=True)
class AnalysisService:
    """Summary: Forwards stored messages to the LLM and persists the results.

    Importance: Summaries and entities are written back onto the message they describe.
    Alternatives: Return LLM output without storing it.
    """

    store: Store
    ai_provider: AiProvider

    def summarize(self, message_id: str, deadline: Deadline | None = None) -> str:
        """Summary: Summarize a message and store the summary.

        Importance: Captures concise context for future review.
        Alternatives: Require users to write notes manually.
        """

        message = self._load(message_id)
        prompt = SUMMARY_PROMPT.format(
            subject=message.subject,
            sender=message.sender,
            recipients=", ".join(message.to),
            body=message.body or message.html_body,
        )
        summary, latency_ms = self.ai_provider.generate_text(prompt, purpose="summary", deadline=deadline)
        self._save(replace(message, summary=summary))
        logger.info("Summarized message %s in %sms.", message_id, latency_ms)
        return summary

    def extract_entities(self, message_id: str, deadline: Deadline | None = None) -> list[Entity]:
        """Summary: Extract named entities from a message body and store them.

        Importance: The model must answer with a bare JSON array; anything else is rejected.
        Alternatives: Scrape JSON out of free-form model output.
        """

        message = self._load(message_id)
        prompt = ENTITY_PROMPT.format(body=message.body or message.html_body)
        response, latency_ms = self.ai_provider.generate_text(prompt, purpose="entities", deadline=deadline)
        entities = parse_entities(response)
        self._save(replace(message, entities=entities))
        logger.info("Extracted %s entities from message %s in %sms.", len(entities), message_id, latency_ms)
        return entities

    def _load(self, message_id: str) -> Message:
        validate_id(message_id, "message id")
        message = self.store.get_message(message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        return message

    def _save(self, message: Message) -> None:
        if not self.store.update_message(message):
            raise NotFoundError(f"Message {message.id} not found")


def parse_entities(response: str) -> list[Entity]:
    """Summary: Parse an LLM response as a list of entities.

    Importance: Keeps malformed model output from reaching storage.
    Alternatives: Store the raw response text and parse lazily.
    """

    try:
        payloads = _ENTITY_LIST.validate_json(response.strip())
    except SchemaError as exc:
        raise MalformedResponseError("LLM entity response is not a JSON entity list") from exc
    return [
        Entity(
            text=item.text,
            type=item.type,
            start=item.start_pos,
            end=item.end_pos,
            confidence=item.confidence,
        )
        for item in payloads
    ]


def _normalize_email(email: str) -> str:
    normalized = (email or "").strip().lower()
    local, _, domain = normalized.partition("@")
    if not local or not domain or "@" in domain:
        raise ValidationError(f"Invalid email address: {email!r}")
    return normalized


def _dedupe_labels(labels: list[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for label in labels:
        cleaned = label.strip()
        if cleaned and cleaned.lower() not in seen:
            seen.add(cleaned.lower())
            result.append(cleaned)
    return result


def _validate_page(page: int, limit: int) -> None:
    if page < 1:
        raise ValidationError("page must be at least 1")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

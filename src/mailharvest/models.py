"""Summary: Domain model dataclasses for mailharvest.

Importance: Defines the core entities shared across services, storage, and the API.
Alternatives: Use Pydantic models or ORM classes directly.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from mailharvest.errors import ValidationError


GMAIL = "gmail"
OUTLOOK = "outlook"
PROVIDERS = (GMAIL, OUTLOOK)

_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""

    return datetime.now(timezone.utc)


def new_id() -> str:
    """Summary: Generate an opaque record identifier.

    Importance: Both store variants hand out ids in the same format.
    Alternatives: Use autoincrement integers per table.
    """

    return uuid.uuid4().hex


def validate_id(value: str, kind: str = "id") -> str:
    """Summary: Check that a caller-supplied id is well formed.

    Importance: Rejects malformed ids as validation errors before touching storage.
    Alternatives: Let lookups fail with a not-found result.
    """

    if not isinstance(value, str) or not _ID_PATTERN.match(value):
        raise ValidationError(f"Invalid {kind}: {value!r}")
    return value


def validate_provider(value: str) -> str:
    """Normalize and validate a provider name."""

    provider = (value or "").strip().lower()
    if provider not in PROVIDERS:
        raise ValidationError(f"Unsupported provider: {value!r}")
    return provider


@dataclass(frozen=True)
class Account:
    """Summary: A connected mailbox and its OAuth credentials.

    Importance: Owns the tokens used for ingestion and the messages pulled from it.
    Alternatives: Store tokens separately from account metadata.
    """

    provider: str
    email: str
    access_token: str
    refresh_token: str
    token_expiry: datetime | None = None
    active: bool = True
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_sync_at: datetime | None = None


@dataclass(frozen=True)
class Entity:
    """Summary: A named entity extracted from a message body.

    Importance: Gives structured access to people, places, and dates mentioned in mail.
    Alternatives: Store the raw LLM response text only.
    """

    text: str
    type: str
    start: int
    end: int
    confidence: float


@dataclass(frozen=True)
class Message:
    """Summary: Represents an email message with metadata and content.

    Importance: Core unit for ingestion, deduplication, and analysis workflows.
    Alternatives: Model only threads and store messages as embedded records.
    """

    account_id: str
    provider_message_id: str
    thread_id: str = ""
    sender: str = ""
    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    subject: str = ""
    body: str = ""
    html_body: str = ""
    labels: list[str] = field(default_factory=list)
    read: bool = False
    starred: bool = False
    received_at: datetime | None = None
    summary: str | None = None
    entities: list[Entity] | None = None
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class MessageFilter:
    """Summary: Filter criteria for listing stored messages.

    Importance: Keeps query semantics identical across store variants.
    Alternatives: Pass raw keyword arguments to each store.
    """

    account_id: str | None = None
    sender: str | None = None
    recipient: str | None = None
    subject: str | None = None
    label: str | None = None
    read: bool | None = None
    starred: bool | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None


@dataclass(frozen=True)
class OAuthTokens:
    """Summary: Normalized OAuth token response data.

    Importance: Provides a consistent token representation for storage and refresh logic.
    Alternatives: Store the raw provider response without normalization.
    """

    access_token: str
    refresh_token: str | None
    expires_at: datetime | None
    token_type: str | None = None


@dataclass(frozen=True)
class UserInfo:
    """Identity returned by a provider's profile endpoint."""

    id: str
    email: str
    name: str = ""
    picture: str = ""

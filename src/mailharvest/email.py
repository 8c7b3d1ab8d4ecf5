"""Summary: Mailbox clients for Gmail and Outlook.

Importance: Encapsulates read-only message listing and mapping into the canonical Message shape.
Alternatives: Rely solely on provider SDKs with vendor lock-in.
"""

from __future__ import annotations

import base64
import logging
import urllib.parse
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaError

from mailharvest.config import AppConfig
from mailharvest.errors import AuthError, HttpStatusError, MalformedResponseError
from mailharvest.http import Deadline, HttpClient
from mailharvest.models import GMAIL, Account, Message, validate_provider


logger = logging.getLogger(__name__)

OUTLOOK_SELECT_FIELDS = (
    "id,conversationId,subject,from,toRecipients,ccRecipients,bccRecipients,"
    "body,categories,isRead,flag,receivedDateTime"
)


@dataclass(frozen=True)
class MessageRef:
    """Summary: Pointer to a message in a provider mailbox.

    Importance: Lets ingestion dedup on the provider id before paying for a full fetch.
    Alternatives: Always fetch full payloads while listing.
    """

    provider_message_id: str
    payload: dict[str, Any] = field(default_factory=dict)


class MailboxClient(ABC):
    """Summary: Abstract interface for one account's mailbox.

    Importance: Standardizes retrieval across Gmail and Outlook.
    Alternatives: Use provider-specific classes directly in ingestion flows.
    """

    def __init__(self, account: Account, http: HttpClient, base_url: str) -> None:
        self._account = account
        self._http = http
        self._base_url = base_url.rstrip("/")

    @abstractmethod
    def list_recent(self, limit: int, deadline: Deadline | None = None) -> list[MessageRef]:
        """Summary: List the most recent messages in the inbox.

        Importance: Drives ingestion workflows across providers.
        Alternatives: Fetch messages by cursor or date range instead.
        """

    @abstractmethod
    def load(self, ref: MessageRef, deadline: Deadline | None = None) -> Message:
        """Fetch (if needed) and map one message into the canonical shape."""

    def _api_get(self, url: str, deadline: Deadline | None) -> dict[str, Any]:
        try:
            return self._http.get_json(
                url,
                headers={"Authorization": f"Bearer {self._account.access_token}"},
                deadline=deadline,
            )
        except HttpStatusError as exc:
            if exc.status == 401:
                raise AuthError(
                    f"{self._account.provider} rejected the access token",
                    provider=self._account.provider,
                    status=exc.status,
                ) from exc
            raise


class GmailMailboxClient(MailboxClient):
    """Summary: Reads emails via the Gmail API using OAuth tokens.

    Importance: Enables OAuth-based ingestion without IMAP passwords.
    Alternatives: Use IMAP or the google-api-python-client SDK.
    """

    def list_recent(self, limit: int, deadline: Deadline | None = None) -> list[MessageRef]:
        query = urllib.parse.urlencode({"maxResults": limit, "q": "in:inbox"})
        payload = self._api_get(f"{self._base_url}/users/me/messages?{query}", deadline)
        refs: list[MessageRef] = []
        for item in payload.get("messages") or []:
            message_id = item.get("id") if isinstance(item, dict) else None
            if message_id:
                refs.append(MessageRef(provider_message_id=message_id))
        return refs

    def load(self, ref: MessageRef, deadline: Deadline | None = None) -> Message:
        url = f"{self._base_url}/users/me/messages/{urllib.parse.quote(ref.provider_message_id)}?format=full"
        payload = self._api_get(url, deadline)
        return parse_gmail_message(self._account.id, payload)


def parse_gmail_message(account_id: str, message: dict[str, Any]) -> Message:
    """Summary: Parse a Gmail message payload into a Message.

    Importance: Normalizes Gmail payloads into the core message model.
    Alternatives: Store raw Gmail payloads and parse later.
    """

    provider_message_id = message.get("id")
    if not provider_message_id:
        raise MalformedResponseError("Gmail message payload has no id")
    payload = message.get("payload") or {}
    headers = _parse_gmail_headers(payload.get("headers") or [])
    text_body, html_body = _extract_gmail_bodies(payload)
    labels = [str(label) for label in message.get("labelIds") or []]
    return Message(
        account_id=account_id,
        provider_message_id=provider_message_id,
        thread_id=message.get("threadId") or "",
        sender=next(iter(_addresses(headers.get("from", ""))), ""),
        to=_addresses(headers.get("to", "")),
        cc=_addresses(headers.get("cc", "")),
        bcc=_addresses(headers.get("bcc", "")),
        subject=headers.get("subject", ""),
        body=text_body,
        html_body=html_body,
        labels=labels,
        read="UNREAD" not in labels,
        starred="STARRED" in labels,
        received_at=_gmail_received_at(message.get("internalDate"), headers.get("date", "")),
    )


def _parse_gmail_headers(headers: list[dict[str, Any]]) -> dict[str, str]:
    """Summary: Normalize Gmail header list into a dictionary keyed by lowercase name.

    Importance: Header names are case-insensitive; the first occurrence wins.
    Alternatives: Scan header lists inline for each field.
    """

    normalized: dict[str, str] = {}
    for header in headers:
        name = header.get("name")
        value = header.get("value")
        if name and value is not None:
            normalized.setdefault(name.lower(), value)
    return normalized


def _addresses(raw: str) -> list[str]:
    return [address for _, address in getaddresses([raw]) if address]


def _extract_gmail_bodies(payload: dict[str, Any]) -> tuple[str, str]:
    """Summary: Find the plain-text and HTML bodies in a Gmail payload.

    Importance: The first text/plain and first text/html part in walk order win.
    Alternatives: Concatenate every text part.
    """

    text_body: str | None = None
    html_body: str | None = None
    for part in _walk_gmail_parts(payload):
        data = (part.get("body") or {}).get("data")
        if not data:
            continue
        mime_type = (part.get("mimeType") or "").lower()
        if mime_type == "text/plain" and text_body is None:
            text_body = _decode_base64url(data)
        elif mime_type == "text/html" and html_body is None:
            html_body = _decode_base64url(data)
    return text_body or "", html_body or ""


def _walk_gmail_parts(payload: dict[str, Any]) -> list[dict[str, Any]]:
    """Summary: Walk Gmail payload parts recursively.

    Importance: Supports nested multipart payloads from Gmail.
    Alternatives: Only inspect the top-level payload.
    """

    parts: list[dict[str, Any]] = [payload]
    for part in payload.get("parts", []) or []:
        parts.extend(_walk_gmail_parts(part))
    return parts


def _decode_base64url(data: str) -> str:
    """Gmail payloads use URL-safe base64 without padding."""

    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")
    except ValueError as exc:
        raise MalformedResponseError("Gmail body is not valid base64url") from exc


def _gmail_received_at(internal_date: Any, date_header: str) -> datetime | None:
    if internal_date:
        try:
            return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            logger.debug("Unparseable Gmail internalDate %r; using Date header.", internal_date)
    if not date_header:
        return None
    try:
        parsed = parsedate_to_datetime(date_header)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class GraphEmailAddress(BaseModel):
    name: str | None = None
    address: str | None = None


class GraphRecipient(BaseModel):
    emailAddress: GraphEmailAddress = Field(default_factory=GraphEmailAddress)


class GraphBody(BaseModel):
    contentType: str = "text"
    content: str = ""


class GraphFlag(BaseModel):
    flagStatus: str | None = None


class GraphMessage(BaseModel):
    """Microsoft Graph message resource, limited to the selected fields."""

    id: str
    conversationId: str | None = None
    subject: str | None = None
    sender: GraphRecipient | None = Field(default=None, alias="from")
    toRecipients: list[GraphRecipient] = Field(default_factory=list)
    ccRecipients: list[GraphRecipient] = Field(default_factory=list)
    bccRecipients: list[GraphRecipient] = Field(default_factory=list)
    body: GraphBody | None = None
    categories: list[str] = Field(default_factory=list)
    isRead: bool = False
    flag: GraphFlag | None = None
    receivedDateTime: datetime | None = None


class OutlookMailboxClient(MailboxClient):
    """Summary: Reads emails via Microsoft Graph using OAuth tokens.

    Importance: Enables OAuth-based Outlook ingestion without IMAP passwords.
    Alternatives: Use IMAP or the msgraph SDK.
    """

    def list_recent(self, limit: int, deadline: Deadline | None = None) -> list[MessageRef]:
        query = urllib.parse.urlencode(
            {"$top": limit, "$select": OUTLOOK_SELECT_FIELDS, "$orderby": "receivedDateTime desc"},
            safe="$,",
            quote_via=urllib.parse.quote,
        )
        payload = self._api_get(f"{self._base_url}/me/mailFolders/inbox/messages?{query}", deadline)
        refs: list[MessageRef] = []
        for item in payload.get("value") or []:
            message_id = item.get("id") if isinstance(item, dict) else None
            if message_id:
                refs.append(MessageRef(provider_message_id=message_id, payload=item))
        return refs

    def load(self, ref: MessageRef, deadline: Deadline | None = None) -> Message:
        # Graph listings already carry the selected fields.
        payload = ref.payload
        if not payload:
            url = (
                f"{self._base_url}/me/messages/{urllib.parse.quote(ref.provider_message_id)}"
                f"?$select={OUTLOOK_SELECT_FIELDS}"
            )
            payload = self._api_get(url, deadline)
        return parse_outlook_message(self._account.id, payload)


def parse_outlook_message(account_id: str, raw: dict[str, Any]) -> Message:
    """Summary: Parse a Microsoft Graph message payload into a Message.

    Importance: Normalizes Outlook payloads into the core message model.
    Alternatives: Store raw Outlook payloads and parse later.
    """

    try:
        message = GraphMessage.model_validate(raw)
    except SchemaError as exc:
        raise MalformedResponseError("Malformed Microsoft Graph message payload") from exc
    body = message.body or GraphBody()
    is_html = body.contentType.lower() == "html"
    received = message.receivedDateTime
    if received is not None:
        received = received.replace(tzinfo=timezone.utc) if received.tzinfo is None else received.astimezone(timezone.utc)
    return Message(
        account_id=account_id,
        provider_message_id=message.id,
        thread_id=message.conversationId or "",
        sender=(message.sender.emailAddress.address or "") if message.sender else "",
        to=_graph_addresses(message.toRecipients),
        cc=_graph_addresses(message.ccRecipients),
        bcc=_graph_addresses(message.bccRecipients),
        subject=message.subject or "",
        body="" if is_html else body.content,
        html_body=body.content if is_html else "",
        labels=list(message.categories),
        read=message.isRead,
        starred=bool(message.flag and message.flag.flagStatus == "flagged"),
        received_at=received,
    )


def _graph_addresses(recipients: list[GraphRecipient]) -> list[str]:
    return [item.emailAddress.address for item in recipients if item.emailAddress.address]


def build_mailbox_client(config: AppConfig, http: HttpClient, account: Account) -> MailboxClient:
    """Summary: Construct the mailbox client for an account's provider.

    Importance: Keeps provider selection logic centralized.
    Alternatives: Wire clients manually at the call site.
    """

    provider = validate_provider(account.provider)
    if provider == GMAIL:
        return GmailMailboxClient(account, http, config.google_api_base_url)
    return OutlookMailboxClient(account, http, config.microsoft_graph_base_url)

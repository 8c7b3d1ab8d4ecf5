"""Summary: In-process document store partitioned by account.

Importance: Second store variant with the same contract as SQLite; used for tests and ephemeral runs.
Alternatives: Point SQLite at ":memory:" and share one connection.
"""

from __future__ import annotations

import copy
import itertools
import threading
from dataclasses import replace

from mailharvest.errors import DuplicateRecordError, NotFoundError
from mailharvest.models import Account, Message, MessageFilter, new_id, utcnow
from mailharvest.storage.base import Store, page_offset


class MemoryStore(Store):
    """Summary: Dict-backed store with one message partition per account.

    Importance: Mirrors a partitioned document database where account_id is the partition key.
    Alternatives: Keep a single flat list of messages.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._accounts: dict[str, Account] = {}
        self._partitions: dict[str, dict[str, Message]] = {}
        self._message_partition: dict[str, str] = {}
        self._sequence = itertools.count()
        self._order: dict[str, int] = {}

    def initialize(self) -> None:
        return None

    def create_account(self, account: Account) -> str:
        account_id = account.id or new_id()
        now = utcnow()
        with self._lock:
            if account_id in self._accounts:
                raise DuplicateRecordError(f"Account {account_id} already exists")
            for existing in self._accounts.values():
                if existing.provider == account.provider and existing.email.lower() == account.email.lower():
                    raise DuplicateRecordError(
                        f"Account for {account.email} on {account.provider} already exists"
                    )
            self._accounts[account_id] = copy.deepcopy(
                replace(account, id=account_id, created_at=now, updated_at=now)
            )
            self._order[account_id] = next(self._sequence)
        return account_id

    def get_account(self, account_id: str) -> Account | None:
        with self._lock:
            account = self._accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def get_account_by_email(self, email: str, provider: str | None = None) -> Account | None:
        with self._lock:
            matches = [
                account
                for account in self._accounts.values()
                if account.email.lower() == email.lower()
                and (provider is None or account.provider == provider)
            ]
            if not matches:
                return None
            return copy.deepcopy(min(matches, key=lambda item: item.created_at))

    def update_account(self, account: Account) -> bool:
        with self._lock:
            current = self._accounts.get(account.id)
            if current is None:
                return False
            self._accounts[account.id] = replace(
                current,
                access_token=account.access_token,
                refresh_token=account.refresh_token,
                token_expiry=account.token_expiry,
                active=account.active,
                last_sync_at=account.last_sync_at,
                updated_at=utcnow(),
            )
            return True

    def delete_account(self, account_id: str) -> bool:
        with self._lock:
            if self._accounts.pop(account_id, None) is None:
                return False
            self._order.pop(account_id, None)
            self.delete_messages_for_account(account_id)
            return True

    def list_accounts(self, page: int, limit: int) -> tuple[list[Account], int]:
        with self._lock:
            ordered = sorted(
                self._accounts.values(),
                key=lambda item: (item.created_at, self._order[item.id]),
                reverse=True,
            )
            offset = page_offset(page, limit)
            return copy.deepcopy(ordered[offset:offset + limit]), len(ordered)

    def create_message(self, message: Message) -> str:
        message_id = message.id or new_id()
        now = utcnow()
        with self._lock:
            if message.account_id not in self._accounts:
                raise NotFoundError(f"Account {message.account_id} does not exist")
            partition = self._partitions.setdefault(message.account_id, {})
            if message_id in self._message_partition:
                raise DuplicateRecordError(f"Message {message_id} already exists")
            for existing in partition.values():
                if existing.provider_message_id == message.provider_message_id:
                    raise DuplicateRecordError(
                        f"Message {message.provider_message_id} already stored for {message.account_id}"
                    )
            partition[message_id] = copy.deepcopy(
                replace(message, id=message_id, created_at=now, updated_at=now)
            )
            self._message_partition[message_id] = message.account_id
            self._order[message_id] = next(self._sequence)
        return message_id

    def get_message(self, message_id: str) -> Message | None:
        with self._lock:
            account_id = self._message_partition.get(message_id)
            if account_id is None:
                return None
            return copy.deepcopy(self._partitions[account_id][message_id])

    def get_message_by_provider_id(self, account_id: str, provider_message_id: str) -> Message | None:
        with self._lock:
            for message in self._partitions.get(account_id, {}).values():
                if message.provider_message_id == provider_message_id:
                    return copy.deepcopy(message)
            return None

    def update_message(self, message: Message) -> bool:
        with self._lock:
            account_id = self._message_partition.get(message.id)
            if account_id is None:
                return False
            partition = self._partitions[account_id]
            partition[message.id] = replace(
                partition[message.id],
                summary=message.summary,
                entities=copy.deepcopy(message.entities),
                labels=list(message.labels),
                read=message.read,
                starred=message.starred,
                updated_at=utcnow(),
            )
            return True

    def delete_message(self, message_id: str) -> bool:
        with self._lock:
            account_id = self._message_partition.pop(message_id, None)
            if account_id is None:
                return False
            self._order.pop(message_id, None)
            del self._partitions[account_id][message_id]
            return True

    def list_messages(self, filters: MessageFilter, page: int, limit: int) -> tuple[list[Message], int]:
        with self._lock:
            if filters.account_id:
                candidates = list(self._partitions.get(filters.account_id, {}).values())
            else:
                candidates = [
                    message for partition in self._partitions.values() for message in partition.values()
                ]
            matched = [message for message in candidates if _matches(message, filters)]
            matched.sort(
                key=lambda item: (*_received_key(item), item.created_at, self._order[item.id]),
                reverse=True,
            )
            offset = page_offset(page, limit)
            return copy.deepcopy(matched[offset:offset + limit]), len(matched)

    def delete_messages_for_account(self, account_id: str) -> int:
        with self._lock:
            partition = self._partitions.pop(account_id, {})
            for message_id in partition:
                self._message_partition.pop(message_id, None)
                self._order.pop(message_id, None)
            return len(partition)


def _received_key(message: Message) -> tuple[int, float]:
    # Messages without a received time sort after dated ones, as in SQLite.
    if message.received_at is None:
        return (0, 0.0)
    return (1, message.received_at.timestamp())


def _contains(haystack: str | None, needle: str) -> bool:
    return needle.lower() in (haystack or "").lower()


def _matches(message: Message, filters: MessageFilter) -> bool:
    if filters.account_id and message.account_id != filters.account_id:
        return False
    if filters.sender and not _contains(message.sender, filters.sender):
        return False
    if filters.recipient and not any(
        _contains(address, filters.recipient) for address in [*message.to, *message.cc, *message.bcc]
    ):
        return False
    if filters.subject and not _contains(message.subject, filters.subject):
        return False
    if filters.label and filters.label.lower() not in {label.lower() for label in message.labels}:
        return False
    if filters.read is not None and message.read != filters.read:
        return False
    if filters.starred is not None and message.starred != filters.starred:
        return False
    if filters.start_date is not None and (
        message.received_at is None or message.received_at < filters.start_date
    ):
        return False
    if filters.end_date is not None and (
        message.received_at is None or message.received_at > filters.end_date
    ):
        return False
    return True

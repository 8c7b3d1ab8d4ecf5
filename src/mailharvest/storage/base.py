"""Summary: Persistence interface shared by all store variants.

Importance: Services depend on this contract, never on a concrete database.
Alternatives: Call a single database implementation directly from services.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from mailharvest.models import Account, Message, MessageFilter


class Store(ABC):
    """Summary: Account and message persistence.

    Importance: Both variants must honor the same unique keys, filters, and ordering.
    Alternatives: Use an ORM session as the service dependency.

    Getters return None for a missing record and update/delete return False;
    failures raise StorageError and unique-key violations raise DuplicateRecordError.
    Account emails are unique per provider regardless of case. Creating a message for an
    unknown account raises NotFoundError, and deleting an account removes its messages.
    """

    @abstractmethod
    def initialize(self) -> None:
        """Create tables or containers if they do not exist."""

    @abstractmethod
    def create_account(self, account: Account) -> str:
        """Persist a new account and return its id."""

    @abstractmethod
    def get_account(self, account_id: str) -> Account | None:
        """Fetch an account by id."""

    @abstractmethod
    def get_account_by_email(self, email: str, provider: str | None = None) -> Account | None:
        """Fetch an account by email, optionally narrowed to one provider."""

    @abstractmethod
    def update_account(self, account: Account) -> bool:
        """Overwrite tokens, expiry, active flag, and last-sync time."""

    @abstractmethod
    def delete_account(self, account_id: str) -> bool:
        """Delete an account record. Messages are removed separately."""

    @abstractmethod
    def list_accounts(self, page: int, limit: int) -> tuple[list[Account], int]:
        """Return one page of accounts, newest first, and the total count."""

    @abstractmethod
    def create_message(self, message: Message) -> str:
        """Persist a new message and return its id."""

    @abstractmethod
    def get_message(self, message_id: str) -> Message | None:
        """Fetch a message by id."""

    @abstractmethod
    def get_message_by_provider_id(self, account_id: str, provider_message_id: str) -> Message | None:
        """Fetch a message by its deduplication key."""

    @abstractmethod
    def update_message(self, message: Message) -> bool:
        """Overwrite summary, entities, labels, and read/starred flags."""

    @abstractmethod
    def delete_message(self, message_id: str) -> bool:
        """Delete a single message."""

    @abstractmethod
    def list_messages(self, filters: MessageFilter, page: int, limit: int) -> tuple[list[Message], int]:
        """Return one page of matching messages, newest received first, and the total count."""

    @abstractmethod
    def delete_messages_for_account(self, account_id: str) -> int:
        """Delete every message owned by an account and return how many were removed."""


def page_offset(page: int, limit: int) -> int:
    """Translate a 1-indexed page number into a row offset."""

    return (max(page, 1) - 1) * limit

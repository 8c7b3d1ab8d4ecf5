"""Summary: SQLite storage implementation for mailharvest.

Importance: Provides a local-first persistence layer with enforced unique keys.
Alternatives: Use an ORM or an external document database.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from mailharvest.errors import DuplicateRecordError, NotFoundError, StorageError
from mailharvest.models import Account, Entity, Message, MessageFilter, new_id, utcnow
from mailharvest.storage.base import Store, page_offset
from mailharvest.token_codec import TokenCodec


_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_ACCOUNT_COLUMNS = (
    "id, provider, email, access_token, refresh_token, token_expiry, active, "
    "created_at, updated_at, last_sync_at"
)
_MESSAGE_COLUMNS = (
    "id, account_id, provider_message_id, thread_id, sender, to_addresses, cc_addresses, "
    "bcc_addresses, subject, body, html_body, labels, is_read, is_starred, received_at, "
    "summary, entities, created_at, updated_at"
)


class SqliteStore(Store):
    """Summary: SQLite-backed storage for accounts and messages.

    Importance: Enables local-first persistence with minimal dependencies.
    Alternatives: Use Postgres and SQLAlchemy from day one.
    """

    def __init__(self, db_path: str, codec: TokenCodec | None = None) -> None:
        """Summary: Initialize the storage with a database path.

        Importance: Allows configurable database location and token encoding per environment.
        Alternatives: Hardcode a default path in the class.
        """

        self._db_path = Path(db_path)
        self._codec = codec

    def initialize(self) -> None:
        """Summary: Create tables and indexes if they do not exist.

        Importance: Unique indexes enforce one account per (provider, email), with email
        compared case-insensitively, and one message per (account, provider message id).
        Messages reference their account and are removed with it.
        Alternatives: Run migrations using a dedicated migration tool.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    provider TEXT NOT NULL,
                    email TEXT NOT NULL COLLATE NOCASE,
                    access_token TEXT NOT NULL,
                    refresh_token TEXT NOT NULL,
                    token_expiry TEXT,
                    active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    last_sync_at TEXT,
                    UNIQUE(provider, email)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    provider_message_id TEXT NOT NULL,
                    thread_id TEXT,
                    sender TEXT,
                    to_addresses TEXT NOT NULL DEFAULT '[]',
                    cc_addresses TEXT NOT NULL DEFAULT '[]',
                    bcc_addresses TEXT NOT NULL DEFAULT '[]',
                    subject TEXT,
                    body TEXT,
                    html_body TEXT,
                    labels TEXT NOT NULL DEFAULT '[]',
                    is_read INTEGER NOT NULL DEFAULT 0,
                    is_starred INTEGER NOT NULL DEFAULT 0,
                    received_at TEXT,
                    summary TEXT,
                    entities TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(account_id, provider_message_id),
                    FOREIGN KEY(account_id) REFERENCES accounts(id) ON DELETE CASCADE
                )
                """
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_received ON messages (received_at DESC)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_account ON messages (account_id)"
            )
            connection.commit()

    def create_account(self, account: Account) -> str:
        """Summary: Insert a new account and return its id.

        Importance: The unique index rejects a second account for the same provider and email.
        Alternatives: Upsert on conflict and hide duplicates from callers.
        """

        account_id = account.id or new_id()
        now = _ts(utcnow())
        with self._connection() as connection:
            connection.execute(
                f"INSERT INTO accounts ({_ACCOUNT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    account_id,
                    account.provider,
                    account.email,
                    self._encode(account.access_token),
                    self._encode(account.refresh_token),
                    _ts(account.token_expiry),
                    int(account.active),
                    now,
                    now,
                    _ts(account.last_sync_at),
                ),
            )
            connection.commit()
        return account_id

    def get_account(self, account_id: str) -> Account | None:
        with self._connection() as connection:
            row = connection.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE id = ?", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str, provider: str | None = None) -> Account | None:
        """Summary: Retrieve an account by email address.

        Importance: Supports upserts during the OAuth callback.
        Alternatives: Filter accounts in memory after listing all.
        """

        with self._connection() as connection:
            if provider is None:
                row = connection.execute(
                    f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE email = ? "
                    "ORDER BY created_at ASC LIMIT 1",
                    (email,),
                ).fetchone()
            else:
                row = connection.execute(
                    f"SELECT {_ACCOUNT_COLUMNS} FROM accounts "
                    "WHERE email = ? AND provider = ?",
                    (email, provider),
                ).fetchone()
        return self._account_from_row(row) if row else None

    def update_account(self, account: Account) -> bool:
        with self._connection() as connection:
            cursor = connection.execute(
                """
                UPDATE accounts
                SET access_token = ?, refresh_token = ?, token_expiry = ?, active = ?,
                    last_sync_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    self._encode(account.access_token),
                    self._encode(account.refresh_token),
                    _ts(account.token_expiry),
                    int(account.active),
                    _ts(account.last_sync_at),
                    _ts(utcnow()),
                    account.id,
                ),
            )
            connection.commit()
            return cursor.rowcount > 0

    def delete_account(self, account_id: str) -> bool:
        with self._connection() as connection:
            cursor = connection.execute("DELETE FROM accounts WHERE id = ?", (account_id,))
            connection.commit()
            return cursor.rowcount > 0

    def list_accounts(self, page: int, limit: int) -> tuple[list[Account], int]:
        """Summary: Retrieve one page of accounts.

        Importance: Backs account listing in the API and CLI.
        Alternatives: Return every account without pagination.
        """

        with self._connection() as connection:
            total = connection.execute("SELECT COUNT(*) FROM accounts").fetchone()[0]
            rows = connection.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                (limit, page_offset(page, limit)),
            ).fetchall()
        return [self._account_from_row(row) for row in rows], int(total)

    def create_message(self, message: Message) -> str:
        """Summary: Insert a message and return its id.

        Importance: The unique index is the final guard against duplicate ingestion.
        Alternatives: Use INSERT OR IGNORE and report nothing.
        """

        message_id = message.id or new_id()
        now = _ts(utcnow())
        with self._connection() as connection:
            connection.execute(
                f"INSERT INTO messages ({_MESSAGE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    message_id,
                    message.account_id,
                    message.provider_message_id,
                    message.thread_id,
                    message.sender,
                    json.dumps(message.to),
                    json.dumps(message.cc),
                    json.dumps(message.bcc),
                    message.subject,
                    message.body,
                    message.html_body,
                    json.dumps(message.labels),
                    int(message.read),
                    int(message.starred),
                    _ts(message.received_at),
                    message.summary,
                    _dump_entities(message.entities),
                    now,
                    now,
                ),
            )
            connection.commit()
        return message_id

    def get_message(self, message_id: str) -> Message | None:
        with self._connection() as connection:
            row = connection.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", (message_id,)
            ).fetchone()
        return _message_from_row(row) if row else None

    def get_message_by_provider_id(self, account_id: str, provider_message_id: str) -> Message | None:
        with self._connection() as connection:
            row = connection.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages "
                "WHERE account_id = ? AND provider_message_id = ?",
                (account_id, provider_message_id),
            ).fetchone()
        return _message_from_row(row) if row else None

    def update_message(self, message: Message) -> bool:
        with self._connection() as connection:
            cursor = connection.execute(
                """
                UPDATE messages
                SET summary = ?, entities = ?, labels = ?, is_read = ?, is_starred = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    message.summary,
                    _dump_entities(message.entities),
                    json.dumps(message.labels),
                    int(message.read),
                    int(message.starred),
                    _ts(utcnow()),
                    message.id,
                ),
            )
            connection.commit()
            return cursor.rowcount > 0

    def delete_message(self, message_id: str) -> bool:
        with self._connection() as connection:
            cursor = connection.execute("DELETE FROM messages WHERE id = ?", (message_id,))
            connection.commit()
            return cursor.rowcount > 0

    def list_messages(self, filters: MessageFilter, page: int, limit: int) -> tuple[list[Message], int]:
        """Summary: Retrieve one page of messages matching a filter.

        Importance: Supplies message listings with the same semantics as the memory store.
        Alternatives: Implement full-text search using SQLite FTS.
        """

        where, params = _message_where(filters)
        with self._connection() as connection:
            total = connection.execute(
                f"SELECT COUNT(*) FROM messages {where}", params
            ).fetchone()[0]
            rows = connection.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages {where} "
                "ORDER BY received_at DESC, created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                [*params, limit, page_offset(page, limit)],
            ).fetchall()
        return [_message_from_row(row) for row in rows], int(total)

    def delete_messages_for_account(self, account_id: str) -> int:
        with self._connection() as connection:
            cursor = connection.execute("DELETE FROM messages WHERE account_id = ?", (account_id,))
            connection.commit()
            return cursor.rowcount

    def _encode(self, token: str) -> str:
        return self._codec.encode(token) if self._codec and token else token

    def _decode(self, token: str) -> str:
        return self._codec.decode(token) if self._codec and token else token

    def _account_from_row(self, row: tuple[Any, ...]) -> Account:
        return Account(
            id=row[0],
            provider=row[1],
            email=row[2],
            access_token=self._decode(row[3]),
            refresh_token=self._decode(row[4]),
            token_expiry=_parse_ts(row[5]),
            active=bool(row[6]),
            created_at=_parse_ts(row[7]),
            updated_at=_parse_ts(row[8]),
            last_sync_at=_parse_ts(row[9]),
        )

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Summary: Context manager for SQLite connections.

        Importance: Ensures connections are closed, foreign keys are enforced, and sqlite errors
        surface as StorageError.
        Alternatives: Keep a single long-lived connection.
        """

        try:
            connection = sqlite3.connect(self._db_path, timeout=30)
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open database {self._db_path}: {exc}") from exc
        try:
            connection.execute("PRAGMA foreign_keys = ON")
            yield connection
        except sqlite3.IntegrityError as exc:
            if "FOREIGN KEY" in str(exc):
                raise NotFoundError(f"Referenced account does not exist: {exc}") from exc
            raise DuplicateRecordError(str(exc)) from exc
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        finally:
            connection.close()


def _message_where(filters: MessageFilter) -> tuple[str, list[Any]]:
    """Build the WHERE clause and parameters for a message filter."""

    clauses: list[str] = []
    params: list[Any] = []
    if filters.account_id:
        clauses.append("account_id = ?")
        params.append(filters.account_id)
    if filters.sender:
        clauses.append("instr(lower(sender), lower(?)) > 0")
        params.append(filters.sender)
    if filters.recipient:
        clauses.append(
            "EXISTS (SELECT 1 FROM json_each(to_addresses) WHERE instr(lower(value), lower(?)) > 0"
            " UNION ALL SELECT 1 FROM json_each(cc_addresses) WHERE instr(lower(value), lower(?)) > 0"
            " UNION ALL SELECT 1 FROM json_each(bcc_addresses) WHERE instr(lower(value), lower(?)) > 0)"
        )
        params.extend([filters.recipient] * 3)
    if filters.subject:
        clauses.append("instr(lower(subject), lower(?)) > 0")
        params.append(filters.subject)
    if filters.label:
        clauses.append("EXISTS (SELECT 1 FROM json_each(labels) WHERE lower(value) = lower(?))")
        params.append(filters.label)
    if filters.read is not None:
        clauses.append("is_read = ?")
        params.append(int(filters.read))
    if filters.starred is not None:
        clauses.append("is_starred = ?")
        params.append(int(filters.starred))
    if filters.start_date is not None:
        clauses.append("received_at >= ?")
        params.append(_ts(filters.start_date))
    if filters.end_date is not None:
        clauses.append("received_at <= ?")
        params.append(_ts(filters.end_date))
    where = "WHERE " + " AND ".join(clauses) if clauses else ""
    return where, params


def _message_from_row(row: tuple[Any, ...]) -> Message:
    return Message(
        id=row[0],
        account_id=row[1],
        provider_message_id=row[2],
        thread_id=row[3] or "",
        sender=row[4] or "",
        to=json.loads(row[5]),
        cc=json.loads(row[6]),
        bcc=json.loads(row[7]),
        subject=row[8] or "",
        body=row[9] or "",
        html_body=row[10] or "",
        labels=json.loads(row[11]),
        read=bool(row[12]),
        starred=bool(row[13]),
        received_at=_parse_ts(row[14]),
        summary=row[15],
        entities=_load_entities(row[16]),
        created_at=_parse_ts(row[17]),
        updated_at=_parse_ts(row[18]),
    )


def _dump_entities(entities: list[Entity] | None) -> str | None:
    if entities is None:
        return None
    return json.dumps(
        [
            {
                "text": entity.text,
                "type": entity.type,
                "start": entity.start,
                "end": entity.end,
                "confidence": entity.confidence,
            }
            for entity in entities
        ]
    )


def _load_entities(raw: str | None) -> list[Entity] | None:
    if raw is None:
        return None
    return [Entity(**item) for item in json.loads(raw)]


def _ts(value: datetime | None) -> str | None:
    """Format a datetime as fixed-width UTC text so string order matches time order."""

    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)

"""Summary: Application factory wiring core services.

Importance: Centralizes dependency creation for the CLI and the API.
Alternatives: Instantiate services manually in each entrypoint.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from mailharvest.ai import AiProvider, AiProviderFactory
from mailharvest.config import AppConfig
from mailharvest.email import build_mailbox_client
from mailharvest.errors import ValidationError
from mailharvest.handshake import HandshakeStateStore
from mailharvest.http import HttpClient
from mailharvest.oauth import build_gateways
from mailharvest.services import AccountService, AnalysisService, IngestionService, MessageService
from mailharvest.storage.base import Store
from mailharvest.storage.memory_store import MemoryStore
from mailharvest.storage.sqlite_store import SqliteStore
from mailharvest.token_codec import TokenCodec


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppServices:
    """Summary: Bundle of core services for mailharvest.

    Importance: Simplifies passing dependencies to the CLI and API layers.
    Alternatives: Use a dependency injection container.
    """

    accounts: AccountService
    ingestion: IngestionService
    messages: MessageService
    analysis: AnalysisService
    store: Store
    config: AppConfig


def build_store(config: AppConfig) -> Store:
    """Summary: Construct and initialize the configured store variant.

    Importance: Store selection is configuration, not code.
    Alternatives: Choose the store with a command-line flag.
    """

    backend = config.store_backend.strip().lower()
    if backend == "sqlite":
        if not config.token_secret:
            logger.warning("MAILHARVEST_TOKEN_SECRET is empty; stored tokens use an unkeyed codec.")
        store: Store = SqliteStore(config.db_path, codec=TokenCodec(config.token_secret))
    elif backend == "memory":
        store = MemoryStore()
    else:
        raise ValidationError(f"Unsupported store backend: {config.store_backend!r}")
    store.initialize()
    logger.info("Using %s store.", backend)
    return store


def build_services(
    config: AppConfig,
    store: Store | None = None,
    http: HttpClient | None = None,
    ai_provider: AiProvider | None = None,
) -> AppServices:
    """Summary: Build core services from configuration.

    Importance: Provides a single construction path; tests inject fakes for the outbound edges.
    Alternatives: Instantiate services directly within each entrypoint.
    """

    store = store or build_store(config)
    http = http or HttpClient(timeout=config.http_timeout_seconds)
    ai_provider = ai_provider or AiProviderFactory(config, http).build()
    accounts = AccountService(
        store=store,
        gateways=build_gateways(config, http),
        handshakes=HandshakeStateStore(config.handshake_ttl_seconds),
        refresh_margin_seconds=config.token_refresh_margin_seconds,
    )
    ingestion = IngestionService(
        store=store,
        accounts=accounts,
        mailbox_factory=lambda account: build_mailbox_client(config, http, account),
        batch_size=config.ingest_batch_size,
    )
    return AppServices(
        accounts=accounts,
        ingestion=ingestion,
        messages=MessageService(store=store),
        analysis=AnalysisService(store=store, ai_provider=ai_provider),
        store=store,
        config=config,
    )

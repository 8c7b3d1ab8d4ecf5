"""Summary: Command-line interface for mailharvest.

Importance: Provides an operator entry point for serving the API and running one-off jobs.
Mailboxes are connected through the running API, which holds the pending OAuth handshakes.
Alternatives: Use a CLI framework like Typer or Click.
"""

from __future__ import annotations

import argparse
import logging

import uvicorn

from mailharvest.api import create_app
from mailharvest.app import build_services
from mailharvest.config import AppConfig
from mailharvest.errors import MailHarvestError
from mailharvest.http import Deadline
from mailharvest.models import MessageFilter


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Summary: Build the CLI argument parser.

    Importance: Defines supported commands for local operation.
    Alternatives: Use a CLI framework like Typer or Click.
    """

    parser = argparse.ArgumentParser(description="mailharvest CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", type=str, default=None)
    serve.add_argument("--port", type=int, default=None)

    list_accounts = subparsers.add_parser("list-accounts", help="List connected accounts")
    list_accounts.add_argument("--page", type=int, default=1)
    list_accounts.add_argument("--limit", type=int, default=20)

    set_active = subparsers.add_parser("set-active", help="Enable or disable an account")
    set_active.add_argument("account_id", type=str)
    set_active.add_argument("--inactive", action="store_true")

    delete_account = subparsers.add_parser("delete-account", help="Delete an account and its messages")
    delete_account.add_argument("account_id", type=str)

    ingest = subparsers.add_parser("ingest", help="Pull recent messages for an account")
    ingest.add_argument("account_id", type=str)

    list_messages = subparsers.add_parser("list-messages", help="List stored messages")
    list_messages.add_argument("--account-id", type=str, default=None)
    list_messages.add_argument("--sender", type=str, default=None)
    list_messages.add_argument("--subject", type=str, default=None)
    list_messages.add_argument("--label", type=str, default=None)
    list_messages.add_argument("--page", type=int, default=1)
    list_messages.add_argument("--limit", type=int, default=10)

    summarize = subparsers.add_parser("summarize", help="Summarize a stored message")
    summarize.add_argument("message_id", type=str)

    entities = subparsers.add_parser("extract-entities", help="Extract entities from a stored message")
    entities.add_argument("message_id", type=str)

    return parser


def run_cli(argv: list[str] | None = None) -> None:
    """Summary: Execute CLI commands based on arguments.

    Importance: Drives operator workflows without a UI.
    Alternatives: Invoke services via the HTTP API.
    """

    parser = build_parser()
    args = parser.parse_args(argv)
    config = AppConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        host = args.host or config.api_host
        port = args.port or config.api_port
        logger.info("Serving mailharvest API on %s:%s.", host, port)
        uvicorn.run(create_app(config), host=host, port=port)
        return

    services = build_services(config)
    try:
        _dispatch(args, services, config)
    except MailHarvestError as exc:
        parser.exit(1, f"error: {exc.kind}: {exc}\n")


def _dispatch(args: argparse.Namespace, services, config: AppConfig) -> None:
    deadline = Deadline.after(config.request_timeout_seconds)

    if args.command == "list-accounts":
        accounts, total = services.accounts.list_accounts(args.page, args.limit)
        for account in accounts:
            status = "active" if account.active else "inactive"
            print(f"{account.id}: {account.provider} {account.email} ({status}, last sync {account.last_sync_at})")
        print(f"{total} accounts.")
        return

    if args.command == "set-active":
        account = services.accounts.set_active(args.account_id, not args.inactive)
        print(f"Account {account.id} active={account.active}.")
        return

    if args.command == "delete-account":
        removed = services.accounts.delete_account(args.account_id)
        print(f"Deleted account {args.account_id} and {removed} messages.")
        return

    if args.command == "ingest":
        report = services.ingestion.ingest(args.account_id, deadline=deadline)
        print(
            f"Fetched {report.fetched}, created {report.created}, "
            f"skipped {report.skipped}, failed {len(report.failures)}."
        )
        for failure in report.failures:
            print(f"  {failure.provider_message_id}: {failure.error}")
        return

    if args.command == "list-messages":
        filters = MessageFilter(
            account_id=args.account_id,
            sender=args.sender,
            subject=args.subject,
            label=args.label,
        )
        messages, total = services.messages.list_messages(filters, args.page, args.limit)
        for message in messages:
            print(f"{message.id}: {message.subject} ({message.sender}, {message.received_at})")
        print(f"{total} messages.")
        return

    if args.command == "summarize":
        print(services.analysis.summarize(args.message_id, deadline=deadline))
        return

    if args.command == "extract-entities":
        for entity in services.analysis.extract_entities(args.message_id, deadline=deadline):
            print(f"{entity.type}: {entity.text} [{entity.start}:{entity.end}] {entity.confidence:.2f}")
        return


if __name__ == "__main__":
    run_cli()

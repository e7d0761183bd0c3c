"""Command-line interface for Email Sync.

This module provides the main entry point for the CLI application and the
zero-argument ``run_sync_pass`` hook for external schedulers.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import structlog

from email_sync import __version__
from email_sync.config import Settings, get_settings
from email_sync.exceptions import EmailSyncError
from email_sync.imap import ImapEmailClient
from email_sync.models import EmailFilterParameters
from email_sync.sync import EmailSyncService, LoggingSyncEventHandler, SqliteSyncCursorStore, SyncResult
from email_sync.sync.plugins import load_event_handlers, load_observers

logger = structlog.get_logger()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="email-sync", description="Email Sync")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Run one incremental sync pass")

    list_parser = subparsers.add_parser("list", help="List message headers without moving the cursor")
    list_parser.add_argument(
        "--folder",
        default=None,
        help="Folder to list (default: settings sync_folder)",
    )
    list_parser.add_argument(
        "--subject",
        default=None,
        help="Only list messages whose subject contains this text",
    )
    list_parser.add_argument(
        "--after",
        type=int,
        default=0,
        help="Only list messages with a UID greater than this",
    )

    cursor_parser = subparsers.add_parser("cursor", help="Inspect or reset the sync cursor")
    cursor_sub = cursor_parser.add_subparsers(dest="cursor_command", required=True)
    cursor_sub.add_parser("show", help="Print the stored cursor")
    cursor_sub.add_parser("reset", help="Forget the cursor; the next pass starts from scratch")

    return parser


def _log_level(settings: Settings) -> int:
    if settings.debug:
        return logging.DEBUG
    return getattr(logging, settings.log_level.upper(), logging.INFO)


def _cursor_store(settings: Settings) -> SqliteSyncCursorStore:
    store = SqliteSyncCursorStore(settings.cursor_db_path, key=settings.cursor_key)
    store.initialize()
    return store


async def _sync_once(settings: Settings) -> SyncResult:
    observers = load_observers()
    event_handlers = [LoggingSyncEventHandler(), *load_event_handlers()]

    async with ImapEmailClient(settings) as client:
        service = EmailSyncService(
            client,
            _cursor_store(settings),
            observers,
            event_handlers,
            settings=settings,
        )
        return await service.sync_next_emails()


def run_sync_pass() -> None:
    """Run one sync pass with the configured settings.

    Entry point for schedulers; safe to call on a fresh installation. Observers
    and event handlers come from the ``email_sync.observers`` and
    ``email_sync.event_handlers`` entry point groups.
    """

    asyncio.run(_sync_once(get_settings()))


def _cmd_run(settings: Settings) -> int:
    result = asyncio.run(_sync_once(settings))
    print(
        f"Synced {result.listed} messages ({result.bodies_fetched} bodies, "
        f"{result.attachments_fetched} attachments, {result.isolated_failures} isolated failures); "
        f"cursor at UID {result.cursor.last_unique_id}"
    )
    return 0


async def _list_messages(settings: Settings, args: argparse.Namespace) -> int:
    filter_parameters = EmailFilterParameters(
        folder=args.folder or settings.sync_folder,
        subject=args.subject,
        after_unique_id=args.after,
    )
    async with ImapEmailClient(settings) as client:
        messages = await client.list_messages(filter_parameters)

    for m in messages:
        sender = m.header.sender.address if m.header.sender else "(unknown sender)"
        date_part = m.header.sent_at.isoformat() if m.header.sent_at else "(no date)"
        attachments = len(m.content.attachments)
        print(f"{m.metadata.protocol_unique_id}\t{date_part}\t{sender}\t{m.header.subject}\t{attachments} att.")
    return 0


def _cmd_cursor(settings: Settings, args: argparse.Namespace) -> int:
    store = _cursor_store(settings)

    if args.cursor_command == "reset":
        store.reset()
        print(f"Cursor {settings.cursor_key!r} reset")
        return 0

    cursor = store.get_or_create()
    synced = cursor.last_synced_at.isoformat() if cursor.last_synced_at else "never"
    print(f"Cursor {settings.cursor_key!r}: last UID {cursor.last_unique_id}, last synced {synced}")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point for the Email Sync CLI.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    if args is None:
        args = sys.argv[1:]

    settings = get_settings()

    # Configure logging
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(_log_level(settings)),
    )

    logger.info("email_sync_started", version=__version__, debug=settings.debug)

    parser = _build_parser()
    parsed = parser.parse_args(args)

    try:
        if parsed.command == "run":
            return _cmd_run(settings)
        if parsed.command == "list":
            return asyncio.run(_list_messages(settings, parsed))
        if parsed.command == "cursor":
            return _cmd_cursor(settings, parsed)
    except EmailSyncError as exc:
        logger.error("command_failed", command=parsed.command, error=str(exc))
        print(f"error: {exc}", file=sys.stderr)
        return 1

    logger.error("unknown_command", command=parsed.command)
    return 2


if __name__ == "__main__":
    sys.exit(main())

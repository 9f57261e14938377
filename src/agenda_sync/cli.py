"""Command-line interface for calendar synchronization."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timedelta, timezone

from agenda_sync import __version__
from agenda_sync.config import Settings, get_settings
from agenda_sync.errors import SyncError

logger = logging.getLogger(__name__)


async def _sync(settings: Settings, calendar_ids: list[str]) -> int:
    from agenda_sync.calendar import GoogleCalendarFetcher
    from agenda_sync.database import close_db, create_tables, init_db
    from agenda_sync.service import build_coordinator
    from agenda_sync.sync import TextRenderer

    session_factory = await init_db(settings.database_url)
    try:
        await create_tables()
        coordinator = build_coordinator(
            settings,
            session_factory,
            GoogleCalendarFetcher.from_settings(settings),
            renderers=[TextRenderer(zone=settings.display_zone)],
        )
        reports = await coordinator.run_all(calendar_ids)
        await coordinator.drain()
    finally:
        await close_db()

    failed = [r for r in reports if not r.success]
    for report in failed:
        print(f"{report.calendar_id}: sync failed: {report.error}", file=sys.stderr)
    return 1 if failed else 0


async def _purge(settings: Settings, days: int) -> int:
    from agenda_sync.database import close_db, create_tables, init_db
    from agenda_sync.store import EventStore

    session_factory = await init_db(settings.database_url)
    try:
        await create_tables()
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        purged = await EventStore(session_factory).purge_older_than(cutoff)
    finally:
        await close_db()

    print(f"Purged {purged} stored events older than {cutoff:%Y-%m-%d %H:%M} UTC")
    return 0


def _serve(settings: Settings, host: str, port: int) -> int:
    import uvicorn

    from agenda_sync.api import create_app

    uvicorn.run(create_app(), host=host, port=port, log_config=None)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Agenda Sync - Keep a local agenda in sync with Google Calendar"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Sync command
    sync_parser = subparsers.add_parser(
        "sync", help="Run one sync cycle and print the agenda"
    )
    sync_parser.add_argument(
        "calendars",
        nargs="*",
        help="Calendar ids (default: CALENDAR_IDS from settings)",
    )

    # Serve command
    serve_parser = subparsers.add_parser(
        "serve", help="Poll calendars and serve snapshots over HTTP"
    )
    serve_parser.add_argument("--host", help="Bind address")
    serve_parser.add_argument("--port", type=int, help="Bind port")

    # Purge command
    purge_parser = subparsers.add_parser(
        "purge", help="Delete tombstones and ended events"
    )
    purge_parser.add_argument(
        "--days",
        type=int,
        help="Keep rows from the last N days, 0 keeps everything (default: RETENTION_DAYS)",
    )

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    settings = get_settings()

    from agenda_sync.service import configure_logging

    configure_logging(args.debug or settings.debug)

    try:
        if args.command == "sync":
            return asyncio.run(_sync(settings, args.calendars or settings.calendar_ids))
        if args.command == "purge":
            days = args.days if args.days is not None else settings.retention_days
            if days <= 0:
                # Same meaning as for the sync loop: 0 keeps everything
                print("Retention is disabled, nothing purged")
                return 0
            return asyncio.run(_purge(settings, days))
        if args.command == "serve":
            return _serve(settings, args.host or settings.host, args.port or settings.port)
    except SyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    sys.exit(main())

"""Command-line interface for the calendar sync engine."""

import argparse
import asyncio
import logging
import sys
from datetime import timedelta

import httpx

from calendar_sync.config import get_settings


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _init_db() -> int:
    from calendar_sync.database.connection import close_db, create_tables, init_db

    await init_db()
    try:
        await create_tables()
    finally:
        await close_db()
    return 0


async def _renew_channels(lookahead_hours: int | None) -> int:
    from calendar_sync.database.connection import close_db, init_db
    from calendar_sync.services import build_services

    settings = get_settings()
    lookahead = timedelta(hours=lookahead_hours) if lookahead_hours else None

    await init_db()
    try:
        async with httpx.AsyncClient(timeout=settings.provider_timeout_seconds) as http_client:
            services = build_services(http_client, settings)
            report = await services.renewer.run_renewal_sweep(lookahead)
    finally:
        await close_db()

    print(f"{report.checked} expiring, {len(report.renewed)} renewed, {len(report.failed)} failed")
    for channel_id in report.failed:
        print(f"  failed: {channel_id}")
    return 0 if report.success else 1


def _serve(host: str | None, port: int | None) -> int:
    import uvicorn

    from calendar_sync.api import create_app

    settings = get_settings()
    uvicorn.run(
        create_app(),
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
    )
    return 0


def main() -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Calendar Sync Engine - keep a local event store in sync via push notifications"
    )
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 0.1.0",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the webhook server")
    serve_parser.add_argument("--host", help="Bind address (default from HOST)")
    serve_parser.add_argument("--port", type=int, help="Port (default from PORT)")

    # Init-db command
    subparsers.add_parser("init-db", help="Create database tables")

    # Renew command
    renew_parser = subparsers.add_parser(
        "renew-channels", help="Renew watch channels that expire soon"
    )
    renew_parser.add_argument(
        "--lookahead-hours",
        type=int,
        default=None,
        help="Renew channels expiring within this many hours (default from settings)",
    )

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return 0

    _configure_logging(get_settings().log_level)

    if args.command == "serve":
        return _serve(args.host, args.port)
    if args.command == "init-db":
        return asyncio.run(_init_db())
    if args.command == "renew-channels":
        return asyncio.run(_renew_channels(args.lookahead_hours))

    parser.error(f"Unknown command {args.command}")
    return 2


if __name__ == "__main__":
    sys.exit(main())

"""Command-line entry point: ``python -m telltide``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from telltide.config import Settings, get_settings
from telltide.storage.database import DatabaseManager
from telltide.worker.scheduler import MetaEventWorker

logger = logging.getLogger("telltide")


async def run(settings: Settings, *, once: bool = False, dry_run: bool | None = None) -> int:
    """Verify the database, then run the worker until a shutdown signal.

    Returns:
        Process exit code.
    """
    db_manager = DatabaseManager(
        settings.database.url,
        pool_size=settings.database.pool_size,
    )
    if not await db_manager.check_connection():
        logger.error("Cannot reach the database, exiting")
        await db_manager.dispose_async()
        return 1

    worker = MetaEventWorker(settings, db_manager=db_manager, dry_run=dry_run)
    try:
        if once:
            try:
                summary = await worker.run_pass()
            finally:
                await worker.close()
            return 0 if summary is not None else 1

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, worker.request_stop)

        await worker.run()
        return 0
    finally:
        await db_manager.dispose_async()


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="telltide",
        description="TellTide meta-event detection and webhook notification worker",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single detection pass and exit",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="Evaluate subscriptions and log payloads without delivering webhooks",
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Configuration: %s", settings.redacted_summary())

    sys.exit(asyncio.run(run(settings, once=args.once, dry_run=args.dry_run)))


if __name__ == "__main__":
    main()

"""
Command line entry point for running calendar synchronization against stored credentials
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from dotenv import load_dotenv

from calsync.services.calendar_event import CalendarProvider, SyncResult
from calsync.sync.controller import CalendarSyncController
from calsync.sync.errors import CalendarNotFound, CredentialMissing
from calsync.sync.storage import SyncStorageManager
from calsync.utils.config import settings

logger = logging.getLogger("calsync")

REMOTE_PROVIDERS = [p.value for p in CalendarProvider if p.requires_sync]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="calsync", description="Calendar synchronization engine")
    parser.add_argument("--storage-path", default=None, help="Directory for file-based storage")
    parser.add_argument("--no-redis", action="store_true", help="Use file storage even if Redis is configured")
    subparsers = parser.add_subparsers(dest="command", required=True)

    calendars = subparsers.add_parser("sync-calendars", help="Sync the calendar list of an account")
    calendars.add_argument("account_id")
    calendars.add_argument("provider", choices=REMOTE_PROVIDERS)

    events = subparsers.add_parser("sync-events", help="Sync calendars and events of an account")
    events.add_argument("account_id")
    events.add_argument("provider", choices=REMOTE_PROVIDERS)
    events.add_argument("--calendar-id", default=None, help="Only sync this local calendar")
    events.add_argument("--full", action="store_true", help="Ignore the stored cursor")

    sync_all = subparsers.add_parser("sync-all", help="Sync every provider of an account")
    sync_all.add_argument("account_id")
    sync_all.add_argument("--full", action="store_true", help="Ignore stored cursors")

    subscribe = subparsers.add_parser("subscribe", help="Subscribe an account to an ICS feed")
    subscribe.add_argument("account_id")
    subscribe.add_argument("url")
    subscribe.add_argument("--name", required=True, help="Calendar name")
    subscribe.add_argument("--color", default=None, help="Calendar color, e.g. #10B981")

    feeds = subparsers.add_parser("sync-feeds", help="Refresh the ICS feeds of an account")
    feeds.add_argument("account_id")
    feeds.add_argument("--calendar-id", default=None, help="Only refresh this feed calendar")
    return parser


def _report(results: List[SyncResult]) -> int:
    exit_code = 0
    for result in results:
        logger.info(
            f"{result.provider.value}/{result.account_id}: {result.status}, "
            f"{result.calendars_synced} calendars synced"
        )
        for error in result.errors:
            logger.error(f"  {error}")
        if result.status != "completed":
            exit_code = 1
    return exit_code


async def run(args: argparse.Namespace) -> int:
    storage = SyncStorageManager(use_redis=not args.no_redis, storage_path=args.storage_path)
    await storage.initialize()
    controller = CalendarSyncController(storage)

    try:
        if args.command == "sync-all":
            return _report(await controller.sync_all(args.account_id, full_sync=args.full))

        if args.command == "subscribe":
            calendar = await controller.subscribe_feed(args.account_id, args.url, args.name, args.color)
            logger.info(f"Subscribed to {args.url} as {calendar.name} ({calendar.id})")
            return 0

        if args.command == "sync-feeds":
            return _report([await controller.sync_feeds(args.account_id, calendar_id=args.calendar_id)])

        provider = CalendarProvider(args.provider)
        credential = await storage.get_credential(args.account_id, provider)
        if credential is None:
            raise CredentialMissing(f"No stored {provider.value} credential for account {args.account_id}")

        if args.command == "sync-calendars":
            calendars = await controller.sync_calendar_list(args.account_id, provider, credential)
            for calendar in calendars:
                logger.info(f"  {calendar.name} ({calendar.external_id})")
            return 0

        result = await controller.sync_account(
            args.account_id, provider, credential, calendar_id=args.calendar_id, full_sync=args.full
        )
        return _report([result])

    except (CredentialMissing, CalendarNotFound) as e:
        logger.error(str(e))
        return 1

    except Exception as e:
        logger.error(f"Unhandled error: {e}")
        return 1

    finally:
        await controller.close()
        await storage.close()


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    args = _build_parser().parse_args(argv)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())

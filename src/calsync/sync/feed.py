"""
ICS Feed Synchronizer

Subscription feeds are read-only. A pass upserts every feed event by UID and
deletes the local events the feed no longer contains.
"""

import logging
from typing import Optional, Tuple

from calsync.services.calendar_event import Calendar, CalendarProvider, RemoteCalendar
from calsync.services.ics_feed import IcsFeedService
from calsync.sync.errors import CalendarSyncError
from calsync.sync.storage import SyncStorageManager

# Set up logging
logger = logging.getLogger(__name__)


class IcsFeedSynchronizer:
    def __init__(self, storage: SyncStorageManager, service: IcsFeedService):
        self.storage = storage
        self.service = service

    async def subscribe(self, account_id: str, url: str, name: str, color: Optional[str] = None) -> Calendar:
        """Create the feed calendar; subscribing to the same URL again renames it"""
        calendar = await self.storage.upsert_calendar(
            account_id,
            CalendarProvider.ICS,
            RemoteCalendar(external_id=url, name=name, color=color, is_read_only=True)
        )
        logger.info(f"Subscribed account {account_id} to feed {url} as calendar {calendar.id}")
        return calendar

    async def sync(self, calendar: Calendar) -> Tuple[int, int]:
        """Reconcile a feed calendar with its feed; returns (upserted, deleted)"""
        if calendar.provider != CalendarProvider.ICS:
            raise CalendarSyncError(f"Calendar {calendar.id} is not a subscription feed")

        changes = await self.service.fetch_events(calendar.external_id)

        seen = set()
        for change in changes:
            await self.storage.upsert_remote_event(calendar.id, change.external_id, change.change_tag, change.data)
            seen.add(change.external_id)

        deleted = 0
        for event in await self.storage.list_events(calendar.id):
            if event.external_id not in seen:
                await self.storage.delete_event(event.id)
                deleted += 1

        await self.storage.save_calendar_cursor(calendar.id, None)
        logger.info(f"Completed feed sync of calendar {calendar.name}: {len(seen)} upserted, {deleted} deleted")
        return len(seen), deleted

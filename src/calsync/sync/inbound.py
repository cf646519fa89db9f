"""
Event Inbound Synchronizer

Pulls event changes for one calendar and applies them locally:

    Start -> FullWindow (no cursor) or Incremental (cursor)
    each page -> apply changes, follow the next page
    last page -> save the new cursor and last_sync_at
    Incremental + cursor rejected -> restart once as FullWindow

A pass that fails midway leaves the applied pages in place and the old cursor
untouched, so the next pass re-reads from the previous cursor.
"""

import asyncio
import logging
from typing import Optional

from calsync.auth.token_refresher import AccessTokenRefresher
from calsync.services.base import CalendarProviderClient, EventPage
from calsync.services.calendar_event import Calendar, Credential
from calsync.sync.errors import CursorExpired, SyncCancelled
from calsync.sync.storage import SyncStorageManager

# Set up logging
logger = logging.getLogger(__name__)


class EventInboundSynchronizer:
    def __init__(self, storage: SyncStorageManager, refresher: AccessTokenRefresher):
        self.storage = storage
        self.refresher = refresher

    async def sync(
        self,
        client: CalendarProviderClient,
        calendar: Calendar,
        credential: Credential,
        cursor: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> Optional[str]:
        """Run one inbound pass and return the cursor that was saved"""
        access_token = await self.refresher.get_access_token(credential)

        if cursor:
            try:
                return await self._run_pass(client, access_token, calendar, cursor, cancel)
            except CursorExpired as e:
                logger.info(f"{e}; falling back to a full sync")

        return await self._run_pass(client, access_token, calendar, None, cancel)

    async def _run_pass(
        self,
        client: CalendarProviderClient,
        access_token: str,
        calendar: Calendar,
        cursor: Optional[str],
        cancel: Optional[asyncio.Event],
    ) -> Optional[str]:
        mode = "incremental" if cursor else "full window"
        page_token: Optional[str] = None
        upserted = deleted = 0

        while True:
            if cancel is not None and cancel.is_set():
                raise SyncCancelled(f"Sync of calendar {calendar.id} cancelled")

            page: EventPage = await client.fetch_event_page(access_token, calendar, cursor, page_token)
            page_upserted, page_deleted = await self._apply_page(calendar, page)
            upserted += page_upserted
            deleted += page_deleted

            if not page.next_page:
                break
            page_token = page.next_page

        # Without a new cursor the old one stays valid for the next pass
        next_cursor = page.next_cursor or cursor
        await self.storage.save_calendar_cursor(calendar.id, next_cursor)
        logger.info(
            f"Completed {mode} sync of calendar {calendar.name} ({calendar.provider.value}): "
            f"{upserted} upserted, {deleted} deleted"
        )
        return next_cursor

    async def _apply_page(self, calendar: Calendar, page: EventPage):
        upserted = deleted = 0
        for change in page.changes:
            if change.deleted:
                if await self.storage.delete_event_by_external_id(calendar.id, change.external_id):
                    deleted += 1
            elif change.data is not None:
                await self.storage.upsert_remote_event(
                    calendar.id, change.external_id, change.change_tag, change.data
                )
                upserted += 1
        return upserted, deleted

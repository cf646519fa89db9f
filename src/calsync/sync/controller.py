"""
Calendar Synchronization Controller

Entry point for synchronizing an account's calendars and events with Google
Calendar and Microsoft Graph, for pushing local event changes back, and for
refreshing ICS subscription feeds.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from calsync.auth.token_refresher import AccessTokenRefresher
from calsync.services.base import CalendarProviderClient
from calsync.services.calendar_event import Calendar, CalendarProvider, Credential, SyncResult, utcnow
from calsync.services.google_calendar import GoogleCalendarService
from calsync.services.ics_feed import IcsFeedService
from calsync.services.microsoft_calendar import MicrosoftCalendarService
from calsync.sync.calendar_list import CalendarListSynchronizer
from calsync.sync.errors import (
    CalendarNotFound, CalendarSyncError, CredentialMissing, SyncCancelled, TokenRefreshFailed
)
from calsync.sync.feed import IcsFeedSynchronizer
from calsync.sync.inbound import EventInboundSynchronizer
from calsync.sync.outbound import EventOutboundPusher
from calsync.sync.storage import SyncStorageManager

# Set up logging
logger = logging.getLogger(__name__)

# Errors that make every further request for the account pointless
FATAL_ERRORS = (CredentialMissing, TokenRefreshFailed, SyncCancelled)


class CalendarSyncController:
    """
    Controller for synchronizing an account's remote calendars into local storage
    """

    def __init__(
        self,
        storage_manager: SyncStorageManager,
        clients: Optional[Dict[CalendarProvider, CalendarProviderClient]] = None,
        feed_service: Optional[IcsFeedService] = None,
    ):
        """Initialize the calendar sync controller"""
        self.storage = storage_manager
        self.clients = clients if clients is not None else {
            CalendarProvider.GOOGLE: GoogleCalendarService(),
            CalendarProvider.MICROSOFT: MicrosoftCalendarService(),
        }
        self.refresher = AccessTokenRefresher(self.storage, self.clients)
        self.calendar_list = CalendarListSynchronizer(self.storage, self.refresher)
        self.inbound = EventInboundSynchronizer(self.storage, self.refresher)
        self.pusher = EventOutboundPusher(self.storage, self.refresher, self.clients)
        self.feed_service = feed_service or IcsFeedService()
        self.feeds = IcsFeedSynchronizer(self.storage, self.feed_service)
        self.active_syncs = set()  # Track active sync operations

    def _client_for(self, provider: CalendarProvider) -> CalendarProviderClient:
        client = self.clients.get(provider)
        if client is None:
            raise CalendarSyncError(f"Provider {provider.value} is not synchronized remotely")
        return client

    async def sync_calendar_list(
        self, account_id: str, provider: CalendarProvider, credential: Credential
    ) -> List[Calendar]:
        """Mirror the provider's calendar list into local calendars"""
        return await self.calendar_list.sync(self._client_for(provider), account_id, credential)

    async def sync_events(
        self,
        calendar: Calendar,
        credential: Credential,
        cursor: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> None:
        """Pull event changes for one calendar; without a cursor the full window is fetched"""
        await self.inbound.sync(self._client_for(calendar.provider), calendar, credential, cursor, cancel)

    async def _calendars_to_sync(
        self, account_id: str, provider: CalendarProvider, calendar_id: Optional[str]
    ) -> List[Calendar]:
        if calendar_id:
            calendar = await self.storage.get_calendar(calendar_id)
            if not calendar or calendar.account_id != account_id or calendar.provider != provider:
                raise CalendarNotFound(f"Calendar {calendar_id} not found for {account_id}/{provider.value}")
            return [calendar]
        calendars = await self.storage.list_calendars(account_id, provider)
        return [calendar for calendar in calendars if calendar.sync_enabled]

    async def sync_account(
        self,
        account_id: str,
        provider: CalendarProvider,
        credential: Credential,
        calendar_id: Optional[str] = None,
        full_sync: bool = False,
        cancel: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        """
        Synchronize one account/provider: the calendar list (unless a single
        calendar is requested), then events of every sync-enabled calendar.
        """
        result = SyncResult(account_id=account_id, provider=provider)
        sync_key = f"{account_id}:{provider.value}"
        if sync_key in self.active_syncs:
            logger.warning(f"Sync already in progress for {sync_key}")
            result.status = "in_progress"
            result.end_time = utcnow()
            return result

        try:
            self.active_syncs.add(sync_key)

            if not calendar_id:
                listed = await self.sync_calendar_list(account_id, provider, credential)
                result.calendars_listed = len(listed)

            for calendar in await self._calendars_to_sync(account_id, provider, calendar_id):
                try:
                    await self.sync_events(
                        calendar, credential, cursor=None if full_sync else calendar.sync_cursor, cancel=cancel
                    )
                    result.calendars_synced += 1
                except FATAL_ERRORS:
                    raise
                except Exception as e:
                    logger.error(f"Error syncing calendar {calendar.name} ({calendar.id}): {e}")
                    result.errors.append(f"{calendar.name}: {e}")

            if result.errors:
                result.status = "partial"

        except Exception as e:
            logger.error(f"Error syncing {provider.value} account {account_id}: {e}")
            result.status = "failed"
            result.errors.append(str(e))

        finally:
            self.active_syncs.discard(sync_key)

        result.end_time = utcnow()
        await self.storage.save_sync_result(result)
        return result

    async def subscribe_feed(
        self, account_id: str, url: str, name: str, color: Optional[str] = None
    ) -> Calendar:
        """Create a read-only calendar backed by an ICS feed"""
        return await self.feeds.subscribe(account_id, url, name, color)

    async def sync_feeds(self, account_id: str, calendar_id: Optional[str] = None) -> SyncResult:
        """Refresh the account's sync-enabled feed calendars, or just calendar_id"""
        result = SyncResult(account_id=account_id, provider=CalendarProvider.ICS)
        sync_key = f"{account_id}:{CalendarProvider.ICS.value}"
        if sync_key in self.active_syncs:
            logger.warning(f"Sync already in progress for {sync_key}")
            result.status = "in_progress"
            result.end_time = utcnow()
            return result

        try:
            self.active_syncs.add(sync_key)
            for calendar in await self._calendars_to_sync(account_id, CalendarProvider.ICS, calendar_id):
                try:
                    await self.feeds.sync(calendar)
                    result.calendars_synced += 1
                except Exception as e:
                    logger.error(f"Error syncing feed {calendar.name} ({calendar.id}): {e}")
                    result.errors.append(f"{calendar.name}: {e}")

            if result.errors:
                result.status = "partial"

        except Exception as e:
            logger.error(f"Error syncing feeds of account {account_id}: {e}")
            result.status = "failed"
            result.errors.append(str(e))

        finally:
            self.active_syncs.discard(sync_key)

        result.end_time = utcnow()
        await self.storage.save_sync_result(result)
        return result

    async def sync_all(self, account_id: str, full_sync: bool = False) -> List[SyncResult]:
        """
        Synchronize every remotely synchronized provider the account has
        credentials for, then the account's subscription feeds.
        """
        results = []
        for credential in await self.storage.list_credentials(account_id):
            if not credential.provider.requires_sync:
                continue
            results.append(
                await self.sync_account(account_id, credential.provider, credential, full_sync=full_sync)
            )
        if await self.storage.list_calendars(account_id, CalendarProvider.ICS):
            results.append(await self.sync_feeds(account_id))
        return results

    async def close(self) -> None:
        for client in self.clients.values():
            await client.close()
        await self.feed_service.close()

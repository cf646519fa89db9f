"""
Calendar List Synchronizer

Mirrors the provider's calendar list into local calendars. Calendars that
disappeared remotely are left in place.
"""

import logging
from typing import List

from calsync.auth.token_refresher import AccessTokenRefresher
from calsync.services.base import CalendarProviderClient
from calsync.services.calendar_event import Calendar, Credential
from calsync.sync.storage import SyncStorageManager

# Set up logging
logger = logging.getLogger(__name__)


class CalendarListSynchronizer:
    def __init__(self, storage: SyncStorageManager, refresher: AccessTokenRefresher):
        self.storage = storage
        self.refresher = refresher

    async def sync(self, client: CalendarProviderClient, account_id: str, credential: Credential) -> List[Calendar]:
        """Upsert every remote calendar for the account and return the local records"""
        access_token = await self.refresher.get_access_token(credential)
        remote_calendars = await client.list_calendars(access_token)

        calendars = []
        for remote in remote_calendars:
            calendars.append(await self.storage.upsert_calendar(account_id, client.provider, remote))

        logger.info(f"Synced {len(calendars)} {client.provider.value} calendars for account {account_id}")
        return calendars

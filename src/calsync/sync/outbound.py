"""
Event Outbound Pusher

Mirrors local event mutations to the remote provider. Pushes are fire and
forget: failures are logged and never reach the caller, whose local write has
already succeeded.
"""

import logging
from typing import Dict

from calsync.auth.token_refresher import AccessTokenRefresher
from calsync.services.base import CalendarProviderClient
from calsync.services.calendar_event import Calendar, CalendarProvider, Credential, Event
from calsync.sync.storage import SyncStorageManager

# Set up logging
logger = logging.getLogger(__name__)


class EventOutboundPusher:
    def __init__(
        self,
        storage: SyncStorageManager,
        refresher: AccessTokenRefresher,
        clients: Dict[CalendarProvider, CalendarProviderClient],
    ):
        self.storage = storage
        self.refresher = refresher
        self.clients = clients

    def _client_for(self, calendar: Calendar):
        if not calendar.provider.requires_sync:
            return None
        client = self.clients.get(calendar.provider)
        if client is None:
            logger.warning(f"No client configured for provider {calendar.provider.value}")
        return client

    async def push_create(self, calendar: Calendar, event: Event, credential: Credential) -> None:
        client = self._client_for(calendar)
        if client is None:
            return
        try:
            access_token = await self.refresher.get_access_token(credential)
            remote = await client.create_event(access_token, calendar, event)
            await self.storage.mark_event_pushed(event.id, remote.external_id, remote.change_tag)
            logger.info(f"Pushed new event {event.id} to {calendar.provider.value} as {remote.external_id}")
        except Exception as e:
            logger.error(f"Error pushing new event {event.id} to {calendar.provider.value}: {e}")

    async def push_update(self, calendar: Calendar, event: Event, credential: Credential) -> None:
        client = self._client_for(calendar)
        if client is None or not event.is_pushed:
            return
        try:
            access_token = await self.refresher.get_access_token(credential)
            change_tag = await client.update_event(access_token, calendar, event)
            await self.storage.update_change_tag(event.id, change_tag)
            logger.debug(f"Pushed update of event {event.external_id} to {calendar.provider.value}")
        except Exception as e:
            logger.error(f"Error pushing update of event {event.id} to {calendar.provider.value}: {e}")

    async def push_delete(self, calendar: Calendar, event: Event, credential: Credential) -> None:
        client = self._client_for(calendar)
        if client is None or not event.is_pushed:
            return
        try:
            access_token = await self.refresher.get_access_token(credential)
            await client.delete_event(access_token, calendar, event)
            logger.debug(f"Pushed deletion of event {event.external_id} to {calendar.provider.value}")
        except Exception as e:
            logger.error(f"Error pushing deletion of event {event.id} to {calendar.provider.value}: {e}")

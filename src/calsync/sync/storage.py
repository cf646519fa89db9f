"""
Sync Storage Manager

Record store for calendars, events, credentials and sync results.
Supports both Redis and file-based storage. Each public write is applied as one
batch: a MULTI pipeline on Redis, a single document rewrite on file storage.
"""

import asyncio
import json
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from redis import asyncio as aioredis

from calsync.services.calendar_event import (
    Calendar, CalendarProvider, Credential, Event, EventData, RemoteCalendar, Synced, SyncResult, utcnow
)
from calsync.utils.config import settings

# Set up logging
logger = logging.getLogger(__name__)

PREFIX = "calsync"


def _calendar_key(calendar_id: str) -> str:
    return f"{PREFIX}:calendar:{calendar_id}"


def _calendar_index_key(account_id: str, provider: str, external_id: str) -> str:
    return f"{PREFIX}:calendar_key:{account_id}:{provider}:{external_id}"


def _account_calendars_key(account_id: str) -> str:
    return f"{PREFIX}:account:{account_id}:calendars"


def _account_credentials_key(account_id: str) -> str:
    return f"{PREFIX}:account:{account_id}:credentials"


def _event_key(event_id: str) -> str:
    return f"{PREFIX}:event:{event_id}"


def _event_index_key(calendar_id: str, external_id: str) -> str:
    return f"{PREFIX}:event_key:{calendar_id}:{external_id}"


def _calendar_events_key(calendar_id: str) -> str:
    return f"{PREFIX}:calendar:{calendar_id}:events"


def _credential_key(account_id: str, provider: str) -> str:
    return f"{PREFIX}:credential:{account_id}:{provider}"


def _sync_result_key(account_id: str, provider: str) -> str:
    return f"{PREFIX}:sync:{account_id}:{provider}:latest_result"


class _Batch:
    """Writes collected for one atomic commit"""

    def __init__(self):
        self.ops: List[Tuple[str, str, Optional[str]]] = []

    def set(self, key: str, value: str) -> None:
        self.ops.append(("set", key, value))

    def delete(self, key: str) -> None:
        self.ops.append(("delete", key, None))

    def sadd(self, key: str, member: str) -> None:
        self.ops.append(("sadd", key, member))

    def srem(self, key: str, member: str) -> None:
        self.ops.append(("srem", key, member))


class SyncStorageManager:
    """
    Manages storage for calendar synchronization data.
    Supports both Redis and file-based storage.
    """

    def __init__(self, use_redis: bool = True, storage_path: Optional[str] = None):
        """Initialize the storage manager"""
        self.use_redis = bool(use_redis and settings.REDIS_HOST)
        self.redis = None
        self.file_storage_path = storage_path or settings.STORAGE_PATH
        self._data: Dict[str, Dict[str, Any]] = {"values": {}, "sets": {}}
        self._lock = asyncio.Lock()

    @property
    def _file_path(self) -> str:
        return os.path.join(self.file_storage_path, "calsync_store.json")

    async def initialize(self):
        """Initialize storage connections"""
        if self.use_redis:
            try:
                self.redis = aioredis.from_url(
                    f"redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}",
                    password=settings.REDIS_PASSWORD or None,
                    encoding="utf-8",
                    decode_responses=True
                )
                await self.redis.ping()
                logger.info("Redis connection established for sync storage")
            except Exception as e:
                logger.error(f"Failed to connect to Redis: {e}")
                self.use_redis = False
                self.redis = None
                logger.info("Falling back to file-based storage")

        if not self.use_redis:
            os.makedirs(self.file_storage_path, exist_ok=True)
            if os.path.exists(self._file_path):
                with open(self._file_path, "r") as f:
                    self._data = json.load(f)

    async def close(self):
        """Close storage connections"""
        if self.use_redis and self.redis:
            await self.redis.aclose()

    # --- Backend primitives ---

    async def _get(self, key: str) -> Optional[str]:
        if self.use_redis:
            return await self.redis.get(key)
        return self._data["values"].get(key)

    async def _members(self, key: str) -> List[str]:
        if self.use_redis:
            return sorted(await self.redis.smembers(key))
        return list(self._data["sets"].get(key, []))

    async def _commit(self, batch: _Batch) -> None:
        if not batch.ops:
            return
        if self.use_redis:
            async with self.redis.pipeline(transaction=True) as pipe:
                for op, key, value in batch.ops:
                    if op == "set":
                        pipe.set(key, value)
                    elif op == "delete":
                        pipe.delete(key)
                    elif op == "sadd":
                        pipe.sadd(key, value)
                    elif op == "srem":
                        pipe.srem(key, value)
                await pipe.execute()
            return

        async with self._lock:
            values = self._data["values"]
            sets = self._data["sets"]
            for op, key, value in batch.ops:
                if op == "set":
                    values[key] = value
                elif op == "delete":
                    values.pop(key, None)
                    sets.pop(key, None)
                elif op == "sadd":
                    members = sets.setdefault(key, [])
                    if value not in members:
                        members.append(value)
                elif op == "srem":
                    members = sets.get(key, [])
                    if value in members:
                        members.remove(value)
            with open(self._file_path, "w") as f:
                json.dump(self._data, f, indent=2, default=str)

    # --- Calendars ---

    async def get_calendar(self, calendar_id: str) -> Optional[Calendar]:
        raw = await self._get(_calendar_key(calendar_id))
        return Calendar.model_validate_json(raw) if raw else None

    async def find_calendar(
        self, account_id: str, provider: CalendarProvider, external_id: str
    ) -> Optional[Calendar]:
        """Look up a calendar by its natural key"""
        calendar_id = await self._get(_calendar_index_key(account_id, provider.value, external_id))
        if not calendar_id:
            return None
        return await self.get_calendar(calendar_id)

    async def list_calendars(
        self, account_id: str, provider: Optional[CalendarProvider] = None
    ) -> List[Calendar]:
        calendars = []
        for calendar_id in await self._members(_account_calendars_key(account_id)):
            calendar = await self.get_calendar(calendar_id)
            if calendar and (provider is None or calendar.provider == provider):
                calendars.append(calendar)
        return calendars

    async def save_calendar(self, calendar: Calendar) -> Calendar:
        """Insert or replace a calendar, keeping the natural-key index current"""
        batch = _Batch()
        batch.set(_calendar_key(calendar.id), calendar.model_dump_json())
        batch.set(
            _calendar_index_key(calendar.account_id, calendar.provider.value, calendar.external_id),
            calendar.id,
        )
        batch.sadd(_account_calendars_key(calendar.account_id), calendar.id)
        await self._commit(batch)
        return calendar

    async def upsert_calendar(
        self, account_id: str, provider: CalendarProvider, remote: RemoteCalendar
    ) -> Calendar:
        """
        Create or refresh a calendar from a provider listing.
        Color, visibility, primary and favorite flags are set only on creation.
        """
        existing = await self.find_calendar(account_id, provider, remote.external_id)
        if existing:
            calendar = existing.model_copy(update={
                "name": remote.name,
                "description": remote.description,
                "is_read_only": remote.is_read_only,
                "updated_at": utcnow(),
            })
        else:
            calendar = Calendar(
                account_id=account_id,
                provider=provider,
                external_id=remote.external_id,
                name=remote.name,
                description=remote.description,
                color=remote.color or settings.DEFAULT_CALENDAR_COLOR,
                is_primary=remote.is_primary,
                is_read_only=remote.is_read_only,
            )
        return await self.save_calendar(calendar)

    async def save_calendar_cursor(
        self, calendar_id: str, cursor: Optional[str], synced_at: Optional[datetime] = None
    ) -> Optional[Calendar]:
        calendar = await self.get_calendar(calendar_id)
        if not calendar:
            return None
        now = synced_at or utcnow()
        calendar = calendar.model_copy(update={"sync_cursor": cursor, "last_sync_at": now, "updated_at": now})
        return await self.save_calendar(calendar)

    async def delete_calendar(self, calendar_id: str) -> None:
        """Delete a calendar and all of its events"""
        calendar = await self.get_calendar(calendar_id)
        if not calendar:
            return
        batch = _Batch()
        for event_id in await self._members(_calendar_events_key(calendar_id)):
            event = await self.get_event(event_id)
            if event and event.external_id:
                batch.delete(_event_index_key(calendar_id, event.external_id))
            batch.delete(_event_key(event_id))
        batch.delete(_calendar_events_key(calendar_id))
        batch.delete(_calendar_index_key(calendar.account_id, calendar.provider.value, calendar.external_id))
        batch.delete(_calendar_key(calendar_id))
        batch.srem(_account_calendars_key(calendar.account_id), calendar_id)
        await self._commit(batch)

    # --- Events ---

    async def get_event(self, event_id: str) -> Optional[Event]:
        raw = await self._get(_event_key(event_id))
        return Event.model_validate_json(raw) if raw else None

    async def find_event(self, calendar_id: str, external_id: str) -> Optional[Event]:
        """Look up a synced event by its natural key"""
        event_id = await self._get(_event_index_key(calendar_id, external_id))
        if not event_id:
            return None
        return await self.get_event(event_id)

    async def list_events(self, calendar_id: str) -> List[Event]:
        events = []
        for event_id in await self._members(_calendar_events_key(calendar_id)):
            event = await self.get_event(event_id)
            if event:
                events.append(event)
        return events

    def _stage_event(self, batch: _Batch, event: Event) -> None:
        batch.set(_event_key(event.id), event.model_dump_json())
        batch.sadd(_calendar_events_key(event.calendar_id), event.id)
        if event.external_id:
            batch.set(_event_index_key(event.calendar_id, event.external_id), event.id)

    async def save_event(self, event: Event) -> Event:
        batch = _Batch()
        self._stage_event(batch, event)
        await self._commit(batch)
        return event

    async def create_local_event(self, calendar_id: str, data: EventData) -> Event:
        """Store an event created by a local user action; it starts Unsynced"""
        event = Event(calendar_id=calendar_id, **data.model_dump())
        return await self.save_event(event)

    async def upsert_remote_event(
        self, calendar_id: str, external_id: str, change_tag: Optional[str], data: EventData
    ) -> Event:
        """
        Insert or fully overwrite the synced event keyed by (calendar_id, external_id).
        Unsynced rows are never matched.
        """
        existing = await self.find_event(calendar_id, external_id)
        fields = data.model_dump()
        remote = Synced(external_id=external_id, change_tag=change_tag)
        if existing:
            event = Event(id=existing.id, calendar_id=calendar_id, remote=remote, **fields)
        else:
            event = Event(calendar_id=calendar_id, remote=remote, **fields)
        return await self.save_event(event)

    async def delete_event(self, event_id: str) -> None:
        event = await self.get_event(event_id)
        if not event:
            return
        batch = _Batch()
        batch.delete(_event_key(event_id))
        batch.srem(_calendar_events_key(event.calendar_id), event_id)
        if event.external_id:
            batch.delete(_event_index_key(event.calendar_id, event.external_id))
        await self._commit(batch)

    async def delete_event_by_external_id(self, calendar_id: str, external_id: str) -> bool:
        event = await self.find_event(calendar_id, external_id)
        if not event:
            return False
        await self.delete_event(event.id)
        return True

    async def mark_event_pushed(
        self, event_id: str, external_id: str, change_tag: Optional[str]
    ) -> Optional[Event]:
        """Record the identifiers a provider assigned to a locally created event"""
        event = await self.get_event(event_id)
        if not event:
            return None
        batch = _Batch()
        duplicate = await self.find_event(event.calendar_id, external_id)
        if duplicate and duplicate.id != event.id:
            # An inbound pass already stored the remote copy; the local row wins
            batch.delete(_event_key(duplicate.id))
            batch.srem(_calendar_events_key(event.calendar_id), duplicate.id)
        event = event.model_copy(update={"remote": Synced(external_id=external_id, change_tag=change_tag)})
        self._stage_event(batch, event)
        await self._commit(batch)
        return event

    async def update_change_tag(self, event_id: str, change_tag: Optional[str]) -> Optional[Event]:
        event = await self.get_event(event_id)
        if not event or not isinstance(event.remote, Synced):
            return None
        event = event.model_copy(
            update={"remote": Synced(external_id=event.remote.external_id, change_tag=change_tag)}
        )
        return await self.save_event(event)

    # --- Credentials ---

    async def get_credential(self, account_id: str, provider: CalendarProvider) -> Optional[Credential]:
        raw = await self._get(_credential_key(account_id, provider.value))
        return Credential.model_validate_json(raw) if raw else None

    async def save_credential(self, credential: Credential) -> Credential:
        batch = _Batch()
        batch.set(_credential_key(credential.account_id, credential.provider.value), credential.model_dump_json())
        batch.sadd(_account_credentials_key(credential.account_id), credential.provider.value)
        await self._commit(batch)
        return credential

    async def list_credentials(self, account_id: str) -> List[Credential]:
        credentials = []
        for provider in await self._members(_account_credentials_key(account_id)):
            credential = await self.get_credential(account_id, CalendarProvider(provider))
            if credential:
                credentials.append(credential)
        return credentials

    # --- Sync results ---

    async def save_sync_result(self, result: SyncResult) -> None:
        """Save the result of a sync operation"""
        batch = _Batch()
        batch.set(_sync_result_key(result.account_id, result.provider.value), result.model_dump_json())
        await self._commit(batch)

    async def get_latest_sync_result(
        self, account_id: str, provider: CalendarProvider
    ) -> Optional[SyncResult]:
        """Get the latest sync result for an account/provider"""
        raw = await self._get(_sync_result_key(account_id, provider.value))
        return SyncResult.model_validate_json(raw) if raw else None

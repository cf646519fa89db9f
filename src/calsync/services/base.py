"""
Calendar provider interface

Each remote provider exposes the same capability set to the synchronizers:
refresh-token exchange, calendar listing, paged event deltas and event
create/update/delete. Provider-specific wire formats stay inside the adapters.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from pydantic import BaseModel, Field
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from calsync.services.calendar_event import (
    Calendar, CalendarProvider, Credential, Event, EventData, RemoteCalendar, Synced, TokenGrant
)
from calsync.sync.errors import RemoteRequestFailed

# Set up logging
logger = logging.getLogger(__name__)


class InboundChange(BaseModel):
    """One event change from a provider page: an upsert or a deletion"""
    external_id: str
    deleted: bool = False
    change_tag: Optional[str] = None
    data: Optional[EventData] = None


class EventPage(BaseModel):
    changes: List[InboundChange] = Field(default_factory=list)
    next_page: Optional[str] = None  # Page token or next link; None on the last page
    next_cursor: Optional[str] = None  # Present on the last page only


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, RemoteRequestFailed) and error.transient


transient_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=4, max=10),
    retry=retry_if_exception(_is_transient),
    reraise=True
)


class CalendarProviderClient(ABC):
    provider: CalendarProvider

    @property
    @abstractmethod
    def auth(self):
        """Token exchanger for this provider"""

    async def refresh_token(self, credential: Credential) -> TokenGrant:
        return await self.auth.refresh_token(credential)

    @transient_retry
    async def list_calendars(self, access_token: str) -> List[RemoteCalendar]:
        """List every calendar visible to the account"""
        return await self._list_calendars(access_token)

    @transient_retry
    async def fetch_event_page(
        self,
        access_token: str,
        calendar: Calendar,
        cursor: Optional[str] = None,
        page: Optional[str] = None,
    ) -> EventPage:
        """
        Fetch one page of event changes.

        Without a cursor the request covers the full sync window. Raises
        CursorExpired when the provider rejects the cursor.
        """
        return await self._fetch_event_page(access_token, calendar, cursor, page)

    @abstractmethod
    async def _list_calendars(self, access_token: str) -> List[RemoteCalendar]:
        ...

    @abstractmethod
    async def _fetch_event_page(
        self, access_token: str, calendar: Calendar, cursor: Optional[str], page: Optional[str]
    ) -> EventPage:
        ...

    @abstractmethod
    async def create_event(self, access_token: str, calendar: Calendar, event: Event) -> Synced:
        """Create the event remotely and return the identifiers the provider assigned"""

    @abstractmethod
    async def update_event(self, access_token: str, calendar: Calendar, event: Event) -> Optional[str]:
        """Update a pushed event and return its new change tag"""

    @abstractmethod
    async def delete_event(self, access_token: str, calendar: Calendar, event: Event) -> None:
        """Delete a pushed event; an already missing event is not an error"""

    async def close(self) -> None:
        """Release network resources"""

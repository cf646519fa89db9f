import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from calsync.utils.config import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class CalendarProvider(str, Enum):
    """Enum for calendar sources"""
    GOOGLE = "google"
    MICROSOFT = "microsoft"
    ICS = "ics"  # Subscription feed, read-only; external_id is the feed URL
    DERIVED = "derived"  # Feed computed locally from other data

    @property
    def requires_sync(self) -> bool:
        """Whether local mutations must be pushed to a remote provider"""
        return self in (CalendarProvider.GOOGLE, CalendarProvider.MICROSOFT)


class EventStatus(str, Enum):
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class Attendee(BaseModel):
    """Common model for event attendees across providers"""
    email: str
    name: Optional[str] = None
    response_status: Optional[str] = None  # needsAction, accepted, declined, tentative
    organizer: bool = False


class Reminder(BaseModel):
    method: str = "popup"  # email or popup
    minutes: int


class Unsynced(BaseModel):
    """The event was created locally and has no remote counterpart yet"""
    state: Literal["unsynced"] = "unsynced"


class Synced(BaseModel):
    """The event exists remotely under external_id"""
    state: Literal["synced"] = "synced"
    external_id: str
    change_tag: Optional[str] = None


RemoteState = Annotated[Union[Unsynced, Synced], Field(discriminator="state")]


class Calendar(BaseModel):
    """
    A named collection of events, owned by an account and tied to one provider.
    (account_id, provider, external_id) is unique.
    """
    id: str = Field(default_factory=new_id)
    account_id: str
    provider: CalendarProvider
    external_id: str
    name: str
    description: Optional[str] = None
    color: str = Field(default_factory=lambda: settings.DEFAULT_CALENDAR_COLOR)
    is_visible: bool = True
    is_primary: bool = False
    is_read_only: bool = False
    is_favorite: bool = False
    sync_enabled: bool = True
    sync_cursor: Optional[str] = None  # Sync token (Google) or delta link (Microsoft)
    last_sync_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class RemoteCalendar(BaseModel):
    """Provider calendar as reported by a calendar-list request"""
    external_id: str
    name: str
    description: Optional[str] = None
    color: Optional[str] = None
    is_primary: bool = False
    is_read_only: bool = False


class EventData(BaseModel):
    """Mutable event fields, as translated from a provider payload"""
    title: str = "(No title)"
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    status: EventStatus = EventStatus.CONFIRMED
    recurrence_rule: Optional[str] = None
    recurring_event_id: Optional[str] = None
    original_start_time: Optional[datetime] = None
    attendees: List[Attendee] = Field(default_factory=list)
    reminders: List[Reminder] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utcnow)


class Event(EventData):
    """
    One event or recurring-series master within a calendar.
    Synced events are unique by (calendar_id, external_id).
    """
    id: str = Field(default_factory=new_id)
    calendar_id: str
    remote: RemoteState = Field(default_factory=Unsynced)

    @property
    def is_pushed(self) -> bool:
        return isinstance(self.remote, Synced)

    @property
    def external_id(self) -> Optional[str]:
        return self.remote.external_id if isinstance(self.remote, Synced) else None

    @property
    def change_tag(self) -> Optional[str]:
        return self.remote.change_tag if isinstance(self.remote, Synced) else None


class Credential(BaseModel):
    """One stored OAuth grant per (account_id, provider)"""
    account_id: str
    provider: CalendarProvider
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    tenant_id: Optional[str] = None  # Microsoft only

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return True
        return self.expires_at <= (now or utcnow())


class TokenGrant(BaseModel):
    """Result of a refresh-token exchange"""
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None


class ClientCredentials(BaseModel):
    """OAuth client registration used for refresh-token exchanges"""
    client_id: str
    client_secret: str
    tenant_id: Optional[str] = None

    @classmethod
    def google_from_settings(cls) -> "ClientCredentials":
        return cls(client_id=settings.GOOGLE_CLIENT_ID, client_secret=settings.GOOGLE_CLIENT_SECRET)

    @classmethod
    def microsoft_from_settings(cls) -> "ClientCredentials":
        return cls(
            client_id=settings.MS_CLIENT_ID,
            client_secret=settings.MS_CLIENT_SECRET,
            tenant_id=settings.MS_TENANT_ID or None,
        )


class SyncResult(BaseModel):
    """Outcome of one orchestrated sync for an account/provider"""
    account_id: str
    provider: CalendarProvider
    status: str = "completed"  # completed, partial, failed
    calendars_listed: int = 0
    calendars_synced: int = 0
    errors: List[str] = Field(default_factory=list)
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None

"""
ICS Subscription Feeds

Fetches a published iCalendar feed and translates its VEVENTs. Feeds carry no
change cursor, so every pass reads the whole feed.
"""

import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Any, List, Optional

import aiohttp
from icalendar import Calendar as iCalendar

from calsync.services.base import InboundChange, transient_retry
from calsync.services.calendar_event import EventData, EventStatus
from calsync.services.dates import local_timezone
from calsync.services.recurrence import validate_rrule
from calsync.sync.errors import RemoteRequestFailed, TranslationSkipped
from calsync.utils.config import settings

# Set up logging
logger = logging.getLogger(__name__)

ICS_STATUS_MAP = {
    "TENTATIVE": EventStatus.TENTATIVE,
    "CANCELLED": EventStatus.CANCELLED,
}


def feed_url(url: str) -> str:
    """webcal:// is plain HTTPS for fetching"""
    if url.lower().startswith("webcal://"):
        return "https://" + url[len("webcal://"):]
    return url


def ics_datetime(value: Any) -> datetime:
    """
    DATE values become local midnight, floating DATE-TIME values local time.
    UTC and TZID values keep their zone.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=local_timezone())
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=local_timezone())
    raise ValueError(f"Unsupported iCalendar date value {value!r}")


def _recurrence_rule(component) -> Optional[str]:
    rrule = component.get("rrule")
    if rrule is None:
        return None
    if isinstance(rrule, list):
        rrule = rrule[0]
    text = rrule.to_ical().decode("utf-8")
    try:
        validate_rrule(text)
    except TranslationSkipped as e:
        logger.warning(f"Dropping feed recurrence {text!r}: {e}")
        return None
    return text


def to_inbound_change(component) -> InboundChange:
    """Translate one VEVENT; raises KeyError or ValueError for unusable events"""
    uid = str(component["uid"])
    start_value = component["dtstart"].dt
    is_all_day = not isinstance(start_value, datetime)
    start_time = ics_datetime(start_value)

    if component.get("dtend") is not None:
        end_time = ics_datetime(component["dtend"].dt)
    elif component.get("duration") is not None:
        end_time = start_time + component["duration"].dt
    else:
        # RFC 5545: a DATE start without an end lasts one day, a DATE-TIME start is instantaneous
        end_time = start_time + timedelta(days=1) if is_all_day else start_time

    external_id = uid
    recurring_event_id = None
    original_start_time = None
    if component.get("recurrence-id") is not None:
        original_start_time = ics_datetime(component["recurrence-id"].dt)
        recurring_event_id = uid
        external_id = f"{uid}:{original_start_time.isoformat()}"

    data = {
        "title": str(component.get("summary") or "") or "(No title)",
        "description": str(component.get("description") or "") or None,
        "location": str(component.get("location") or "") or None,
        "start_time": start_time,
        "end_time": end_time,
        "is_all_day": is_all_day,
        "status": ICS_STATUS_MAP.get(str(component.get("status") or "").upper(), EventStatus.CONFIRMED),
        "recurrence_rule": None if recurring_event_id else _recurrence_rule(component),
        "recurring_event_id": recurring_event_id,
        "original_start_time": original_start_time,
    }
    if component.get("last-modified") is not None:
        data["updated_at"] = ics_datetime(component["last-modified"].dt)

    sequence = component.get("sequence")
    return InboundChange(
        external_id=external_id,
        change_tag=str(sequence) if sequence is not None else None,
        data=EventData(**data)
    )


def parse_feed(content: str) -> List[InboundChange]:
    """All usable events of a feed; malformed VEVENTs are logged and skipped"""
    try:
        calendar = iCalendar.from_ical(content)
    except ValueError as e:
        raise RemoteRequestFailed(f"Feed is not valid iCalendar: {e}") from e

    changes = []
    for component in calendar.walk("VEVENT"):
        try:
            changes.append(to_inbound_change(component))
        except (KeyError, ValueError) as e:
            logger.warning(f"Skipping feed event {component.get('uid')}: {e}")
    return changes


class IcsFeedService:
    def __init__(self):
        self.http_session: Optional[aiohttp.ClientSession] = None

    def _session(self) -> aiohttp.ClientSession:
        if self.http_session is None or self.http_session.closed:
            self.http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=settings.HTTP_TIMEOUT_SECONDS)
            )
        return self.http_session

    async def close(self) -> None:
        if self.http_session:
            await self.http_session.close()
            self.http_session = None

    @transient_retry
    async def fetch_feed(self, url: str) -> str:
        try:
            async with self._session().get(feed_url(url), headers={"User-Agent": settings.ICS_USER_AGENT}) as response:
                if response.status >= 400:
                    raise RemoteRequestFailed.from_status(f"ICS feed fetch failed for {url}", response.status)
                return await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RemoteRequestFailed(f"ICS feed fetch failed for {url}: {e}", transient=True) from e

    async def fetch_events(self, url: str) -> List[InboundChange]:
        content = await self.fetch_feed(url)
        changes = parse_feed(content)
        logger.debug(f"Read {len(changes)} events from feed {url}")
        return changes

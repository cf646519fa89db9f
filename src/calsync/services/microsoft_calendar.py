import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import aiohttp

from calsync.auth.microsoft_auth import MicrosoftGraphAuth
from calsync.services.base import CalendarProviderClient, EventPage, InboundChange
from calsync.services.calendar_event import (
    Attendee, Calendar, CalendarProvider, Event, EventData, EventStatus, RemoteCalendar, Reminder, Synced
)
from calsync.services.dates import (
    format_utc, local_date, microsoft_event_times, parse_graph_datetime, parse_instant, sync_window
)
from calsync.services.recurrence import microsoft_to_rrule, rrule_to_microsoft
from calsync.sync.errors import CursorExpired, RemoteRequestFailed
from calsync.utils.config import settings

# Set up logging
logger = logging.getLogger(__name__)

# Outlook preset calendar colors
MS_COLOR_MAP = {
    "auto": "#3B82F6",
    "lightBlue": "#60A5FA",
    "lightGreen": "#4ADE80",
    "lightOrange": "#FB923C",
    "lightGray": "#9CA3AF",
    "lightYellow": "#FACC15",
    "lightTeal": "#2DD4BF",
    "lightPink": "#F472B6",
    "lightBrown": "#A16207",
    "lightRed": "#F87171",
    "maxColor": "#3B82F6",
}

RESPONSE_STATUS_MAP = {
    "none": "needsAction",
    "notResponded": "needsAction",
    "organizer": "accepted",
    "accepted": "accepted",
    "declined": "declined",
    "tentativelyAccepted": "tentative",
}


def ms_color_to_hex(calendar: Dict[str, Any]) -> str:
    hex_color = calendar.get("hexColor")
    if hex_color:
        return hex_color
    return MS_COLOR_MAP.get(calendar.get("color", ""), settings.DEFAULT_CALENDAR_COLOR)


def graph_description(item: Dict[str, Any]) -> Optional[str]:
    """Full plain-text body; bodyPreview is truncated and only a fallback"""
    body = item.get("body") or {}
    if body.get("content") and body.get("contentType", "text").lower() == "text":
        return body["content"].strip() or None
    return item.get("bodyPreview") or None

class MicrosoftCalendarService(CalendarProviderClient):
    provider = CalendarProvider.MICROSOFT

    def __init__(self, auth: Optional[MicrosoftGraphAuth] = None):
        """Initialize the Microsoft Calendar service"""
        self._auth = auth or MicrosoftGraphAuth()
        self.base_url = settings.MS_GRAPH_URL.rstrip("/")
        self.http_session: Optional[aiohttp.ClientSession] = None

    @property
    def auth(self) -> MicrosoftGraphAuth:
        return self._auth

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

    async def _request(
        self,
        method: str,
        path_or_url: str,
        access_token: str,
        params: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Optional[Dict[str, Any]]]:
        """Send a Graph request; next and delta links are absolute URLs"""
        url = path_or_url if path_or_url.startswith("http") else f"{self.base_url}{path_or_url}"
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Prefer": 'outlook.timezone="UTC", outlook.body-content-type="text"',
        }
        try:
            async with self._session().request(method, url, headers=headers, params=params, json=body) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    raise RemoteRequestFailed.from_status(
                        f"Microsoft Graph {method} failed: {response.status} - {error_text[:200]}",
                        response.status
                    )
                if response.status == 204:
                    return response.status, None
                return response.status, await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RemoteRequestFailed(f"Microsoft Graph {method} failed: {e}", transient=True) from e

    async def _list_calendars(self, access_token: str) -> List[RemoteCalendar]:
        calendars = []
        next_link: Optional[str] = "/me/calendars"
        while next_link:
            _, calendar_list = await self._request("GET", next_link, access_token)
            calendar_list = calendar_list or {}

            for calendar in calendar_list.get("value", []):
                calendars.append(RemoteCalendar(
                    external_id=calendar["id"],
                    name=calendar.get("name", "Unnamed Calendar"),
                    color=ms_color_to_hex(calendar),
                    is_primary=calendar.get("isDefaultCalendar", False),
                    is_read_only=not calendar.get("canEdit", True)
                ))

            next_link = calendar_list.get("@odata.nextLink")

        logger.debug(f"Listed {len(calendars)} Microsoft calendars")
        return calendars

    async def _fetch_event_page(
        self, access_token: str, calendar: Calendar, cursor: Optional[str], page: Optional[str]
    ) -> EventPage:
        params = None
        if page:
            url = page
        elif cursor:
            url = cursor
        else:
            window_start, window_end = sync_window()
            url = f"/me/calendars/{quote(calendar.external_id, safe='')}/calendarView/delta"
            params = {
                "startDateTime": f"{format_utc(window_start)}Z",
                "endDateTime": f"{format_utc(window_end)}Z",
            }

        try:
            _, events_result = await self._request("GET", url, access_token, params=params)
        except RemoteRequestFailed as error:
            if error.status == 410 and cursor:
                raise CursorExpired(f"Microsoft delta link expired for calendar {calendar.external_id}") from error
            raise
        events_result = events_result or {}

        changes = []
        for item in events_result.get("value", []):
            try:
                changes.append(self.to_inbound_change(item))
            except (KeyError, ValueError) as event_error:
                logger.error(f"Error processing Microsoft event {item.get('id')}: {event_error}")
                continue

        return EventPage(
            changes=changes,
            next_page=events_result.get("@odata.nextLink"),
            next_cursor=events_result.get("@odata.deltaLink")
        )

    def to_inbound_change(self, item: Dict[str, Any]) -> InboundChange:
        """Translate a Graph event resource"""
        if "@removed" in item or item.get("isCancelled"):
            return InboundChange(external_id=item["id"], deleted=True)
        return InboundChange(
            external_id=item["id"],
            change_tag=item.get("@odata.etag"),
            data=self.to_event_data(item)
        )

    def to_event_data(self, item: Dict[str, Any]) -> EventData:
        is_all_day = item.get("isAllDay", False)
        organizer_email = (item.get("organizer") or {}).get("emailAddress", {}).get("address", "")

        attendees = []
        for attendee in item.get("attendees", []):
            email_address = attendee.get("emailAddress", {})
            if not email_address.get("address"):
                continue
            response = (attendee.get("status") or {}).get("response", "none")
            attendees.append(Attendee(
                email=email_address["address"],
                name=email_address.get("name"),
                response_status=RESPONSE_STATUS_MAP.get(response, "needsAction"),
                organizer=bool(organizer_email) and email_address["address"].lower() == organizer_email.lower()
            ))

        reminders = []
        if item.get("isReminderOn") and item.get("reminderMinutesBeforeStart") is not None:
            reminders.append(Reminder(method="popup", minutes=int(item["reminderMinutesBeforeStart"])))

        data = {
            "title": item.get("subject") or "(No title)",
            "description": graph_description(item),
            "location": (item.get("location") or {}).get("displayName") or None,
            "start_time": parse_graph_datetime(item["start"], is_all_day),
            "end_time": parse_graph_datetime(item["end"], is_all_day),
            "is_all_day": is_all_day,
            "status": EventStatus.TENTATIVE if item.get("showAs") == "tentative" else EventStatus.CONFIRMED,
            "recurrence_rule": microsoft_to_rrule(item.get("recurrence")),
            "recurring_event_id": item.get("seriesMasterId"),
            "original_start_time": parse_instant(item["originalStart"]) if item.get("originalStart") else None,
            "attendees": attendees,
            "reminders": reminders,
        }
        if item.get("lastModifiedDateTime"):
            data["updated_at"] = parse_instant(item["lastModifiedDateTime"])
        return EventData(**data)

    def build_event_body(self, event: Event) -> Dict[str, Any]:
        """Graph event resource for a local event"""
        start, end = microsoft_event_times(event.start_time, event.end_time, event.is_all_day)
        body: Dict[str, Any] = {
            "subject": event.title,
            "body": {"contentType": "text", "content": event.description or ""},
            "location": {"displayName": event.location or ""},
            "start": start,
            "end": end,
            "isAllDay": event.is_all_day,
            "showAs": "tentative" if event.status == EventStatus.TENTATIVE else "busy",
        }

        recurrence = rrule_to_microsoft(event.recurrence_rule, local_date(event.start_time))
        if recurrence:
            body["recurrence"] = recurrence

        if event.attendees:
            body["attendees"] = [
                {
                    "emailAddress": {"address": attendee.email, "name": attendee.name or attendee.email},
                    "type": "required",
                }
                for attendee in event.attendees
                if not attendee.organizer
            ]

        if event.reminders:
            body["isReminderOn"] = True
            body["reminderMinutesBeforeStart"] = event.reminders[0].minutes
        return body

    async def create_event(self, access_token: str, calendar: Calendar, event: Event) -> Synced:
        _, created = await self._request(
            "POST",
            f"/me/calendars/{quote(calendar.external_id, safe='')}/events",
            access_token,
            body=self.build_event_body(event)
        )
        created = created or {}
        return Synced(external_id=created["id"], change_tag=created.get("@odata.etag"))

    async def update_event(self, access_token: str, calendar: Calendar, event: Event) -> Optional[str]:
        _, updated = await self._request(
            "PATCH",
            f"/me/events/{quote(event.external_id, safe='')}",
            access_token,
            body=self.build_event_body(event)
        )
        return (updated or {}).get("@odata.etag")

    async def delete_event(self, access_token: str, calendar: Calendar, event: Event) -> None:
        try:
            await self._request("DELETE", f"/me/events/{quote(event.external_id, safe='')}", access_token)
        except RemoteRequestFailed as error:
            if error.status in (404, 410):
                logger.info(f"Microsoft event {event.external_id} already gone")
                return
            raise

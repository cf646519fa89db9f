import asyncio
import logging
from typing import Any, Dict, List, Optional

import httplib2
from googleapiclient.errors import HttpError

from calsync.auth.google_auth import GoogleCalendarAuth
from calsync.services.base import CalendarProviderClient, EventPage, InboundChange
from calsync.services.calendar_event import (
    Attendee, Calendar, CalendarProvider, Event, EventData, EventStatus, RemoteCalendar, Reminder, Synced
)
from calsync.services.dates import (
    format_utc, google_event_times, parse_instant, parse_local_date, sync_window
)
from calsync.services.recurrence import google_to_rrule, rrule_to_google
from calsync.sync.errors import CursorExpired, RemoteRequestFailed
from calsync.utils.config import settings

# Set up logging
logger = logging.getLogger(__name__)

READ_ONLY_ROLES = ("reader", "freeBusyReader")


def _http_status(error: HttpError) -> int:
    return int(error.resp.status)


class GoogleCalendarService(CalendarProviderClient):
    provider = CalendarProvider.GOOGLE

    def __init__(self, auth: Optional[GoogleCalendarAuth] = None):
        """Initialize the Google Calendar service"""
        self._auth = auth or GoogleCalendarAuth()

    @property
    def auth(self) -> GoogleCalendarAuth:
        return self._auth

    async def _execute(self, request, action: str) -> Dict[str, Any]:
        """Run a googleapiclient request off the event loop"""
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, request.execute),
                timeout=settings.HTTP_TIMEOUT_SECONDS
            )
        except HttpError as error:
            status = _http_status(error)
            raise RemoteRequestFailed.from_status(f"Google {action} failed: {error}", status) from error
        except (asyncio.TimeoutError, httplib2.HttpLib2Error, OSError) as e:
            raise RemoteRequestFailed(f"Google {action} failed: {e}", transient=True) from e

    async def _list_calendars(self, access_token: str) -> List[RemoteCalendar]:
        service = self.auth.get_calendar_service(access_token)
        calendars = []
        page_token = None
        while True:
            params = {'pageToken': page_token} if page_token else {}
            calendar_list = await self._execute(service.calendarList().list(**params), "calendar list")

            for item in calendar_list.get('items', []):
                calendars.append(RemoteCalendar(
                    external_id=item['id'],
                    name=item.get('summaryOverride') or item.get('summary', 'Unnamed Calendar'),
                    description=item.get('description'),
                    color=item.get('backgroundColor'),
                    is_primary=item.get('primary', False),
                    is_read_only=item.get('accessRole', '') in READ_ONLY_ROLES
                ))

            page_token = calendar_list.get('nextPageToken')
            if not page_token:
                break

        logger.debug(f"Listed {len(calendars)} Google calendars")
        return calendars

    async def _fetch_event_page(
        self, access_token: str, calendar: Calendar, cursor: Optional[str], page: Optional[str]
    ) -> EventPage:
        service = self.auth.get_calendar_service(access_token)

        # Recurring masters are stored with their rule, so instances are not expanded
        params: Dict[str, Any] = {
            'calendarId': calendar.external_id,
            'maxResults': settings.GOOGLE_MAX_RESULTS,
            'singleEvents': False
        }
        if cursor:
            params['syncToken'] = cursor
        else:
            window_start, window_end = sync_window()
            params['timeMin'] = f"{format_utc(window_start)}Z"
            params['timeMax'] = f"{format_utc(window_end)}Z"
        if page:
            params['pageToken'] = page

        try:
            events_result = await self._execute(service.events().list(**params), "event list")
        except RemoteRequestFailed as error:
            if error.status == 410 and cursor:  # Gone - sync token expired
                raise CursorExpired(f"Google sync token expired for calendar {calendar.external_id}") from error
            raise

        changes = []
        for item in events_result.get('items', []):
            try:
                changes.append(self.to_inbound_change(item))
            except (KeyError, ValueError) as event_error:
                logger.error(f"Error processing Google event {item.get('id')}: {event_error}")
                continue

        return EventPage(
            changes=changes,
            next_page=events_result.get('nextPageToken'),
            next_cursor=events_result.get('nextSyncToken')
        )

    def to_inbound_change(self, item: Dict[str, Any]) -> InboundChange:
        """Translate a Google event resource"""
        if item.get('status') == 'cancelled':
            return InboundChange(external_id=item['id'], deleted=True)
        return InboundChange(
            external_id=item['id'],
            change_tag=item.get('etag'),
            data=self.to_event_data(item)
        )

    @staticmethod
    def _parse_time(value: Dict[str, Any]):
        if value.get('dateTime'):
            return parse_instant(value['dateTime'])
        return parse_local_date(value['date'])

    def to_event_data(self, item: Dict[str, Any]) -> EventData:
        start = item.get('start', {})
        end = item.get('end', {})
        is_all_day = 'date' in start and 'dateTime' not in start

        start_time = self._parse_time(start)
        end_time = self._parse_time(end) if end else start_time

        attendees = [
            Attendee(
                email=attendee['email'],
                name=attendee.get('displayName'),
                response_status=attendee.get('responseStatus'),
                organizer=attendee.get('organizer', False)
            )
            for attendee in item.get('attendees', [])
            if attendee.get('email')
        ]

        reminders = [
            Reminder(method=override.get('method', 'popup'), minutes=int(override['minutes']))
            for override in item.get('reminders', {}).get('overrides', [])
        ]

        data = {
            'title': item.get('summary') or '(No title)',
            'description': item.get('description'),
            'location': item.get('location'),
            'start_time': start_time,
            'end_time': end_time,
            'is_all_day': is_all_day,
            'status': EventStatus.TENTATIVE if item.get('status') == 'tentative' else EventStatus.CONFIRMED,
            'recurrence_rule': google_to_rrule(item.get('recurrence')),
            'recurring_event_id': item.get('recurringEventId'),
            'original_start_time': self._parse_time(item['originalStartTime']) if item.get('originalStartTime') else None,
            'attendees': attendees,
            'reminders': reminders,
        }
        if item.get('updated'):
            data['updated_at'] = parse_instant(item['updated'])
        return EventData(**data)

    def build_event_body(self, event: Event) -> Dict[str, Any]:
        """Google event resource for a local event"""
        start, end = google_event_times(event.start_time, event.end_time, event.is_all_day)
        body: Dict[str, Any] = {
            'summary': event.title,
            'description': event.description or '',
            'location': event.location or '',
            'start': start,
            'end': end,
        }
        if event.status == EventStatus.TENTATIVE:
            body['status'] = 'tentative'

        recurrence = rrule_to_google(event.recurrence_rule)
        if recurrence:
            body['recurrence'] = recurrence

        if event.attendees:
            body['attendees'] = [
                {
                    'email': attendee.email,
                    **({'displayName': attendee.name} if attendee.name else {}),
                    **({'responseStatus': attendee.response_status} if attendee.response_status else {})
                }
                for attendee in event.attendees
            ]

        if event.reminders:
            body['reminders'] = {
                'useDefault': False,
                'overrides': [{'method': r.method, 'minutes': r.minutes} for r in event.reminders]
            }
        return body

    async def create_event(self, access_token: str, calendar: Calendar, event: Event) -> Synced:
        service = self.auth.get_calendar_service(access_token)
        created = await self._execute(
            service.events().insert(calendarId=calendar.external_id, body=self.build_event_body(event)),
            "event insert"
        )
        return Synced(external_id=created['id'], change_tag=created.get('etag'))

    async def update_event(self, access_token: str, calendar: Calendar, event: Event) -> Optional[str]:
        service = self.auth.get_calendar_service(access_token)
        updated = await self._execute(
            service.events().patch(
                calendarId=calendar.external_id,
                eventId=event.external_id,
                body=self.build_event_body(event)
            ),
            "event patch"
        )
        return updated.get('etag')

    async def delete_event(self, access_token: str, calendar: Calendar, event: Event) -> None:
        service = self.auth.get_calendar_service(access_token)
        try:
            await self._execute(
                service.events().delete(calendarId=calendar.external_id, eventId=event.external_id),
                "event delete"
            )
        except RemoteRequestFailed as error:
            if error.status in (404, 410):
                logger.info(f"Google event {event.external_id} already gone")
                return
            raise

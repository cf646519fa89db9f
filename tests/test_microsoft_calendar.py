import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from calsync.services.calendar_event import Event, EventStatus, Reminder, Synced
from calsync.services.microsoft_calendar import MicrosoftCalendarService, graph_description
from calsync.sync.errors import CursorExpired, RemoteRequestFailed


@pytest.fixture
def microsoft_service():
    return MicrosoftCalendarService(auth=MagicMock())


GRAPH_EVENT = {
    "@odata.etag": 'W/"DwAAABYAAAA"',
    "id": "AAMkAD-1",
    "subject": "1:1",
    "bodyPreview": "Agenda - budget - hiring plan for the next quarter, with",
    "body": {"contentType": "text", "content": "Agenda\r\n- budget\r\n- hiring plan for the next quarter, with numbers\r\n"},
    "isAllDay": False,
    "isCancelled": False,
    "showAs": "tentative",
    "lastModifiedDateTime": "2026-02-10T12:00:00.1234567Z",
    "start": {"dateTime": "2026-02-17T14:00:00.0000000", "timeZone": "UTC"},
    "end": {"dateTime": "2026-02-17T14:30:00.0000000", "timeZone": "UTC"},
    "location": {"displayName": "Teams"},
    "isReminderOn": True,
    "reminderMinutesBeforeStart": 10,
    "organizer": {"emailAddress": {"name": "Ann", "address": "ann@example.com"}},
    "attendees": [
        {"type": "required", "status": {"response": "organizer"},
         "emailAddress": {"name": "Ann", "address": "Ann@Example.com"}},
        {"type": "required", "status": {"response": "tentativelyAccepted"},
         "emailAddress": {"name": "Bob", "address": "bob@example.com"}}
    ],
    "recurrence": {
        "pattern": {"type": "weekly", "interval": 1, "daysOfWeek": ["tuesday"]},
        "range": {"type": "numbered", "startDate": "2026-02-17", "numberOfOccurrences": 6}
    }
}

ALL_DAY_EVENT = {
    "id": "AAMkAD-2",
    "subject": "",
    "isAllDay": True,
    "start": {"dateTime": "2026-02-02T00:00:00.0000000", "timeZone": "UTC"},
    "end": {"dateTime": "2026-02-03T00:00:00.0000000", "timeZone": "UTC"}
}


@pytest.mark.asyncio
async def test_full_window_uses_calendar_view_delta(microsoft_service, microsoft_calendar):
    with patch.object(microsoft_service, "_request", AsyncMock(return_value=(200, {
        "value": [],
        "@odata.deltaLink": "https://graph.microsoft.com/v1.0/me/calendars/AAMkAGI2/calendarView/delta?$deltatoken=d1"
    }))) as mock_request:
        page = await microsoft_service.fetch_event_page("token", microsoft_calendar)

    method, url, token = mock_request.call_args.args
    assert method == "GET"
    assert url == "/me/calendars/AAMkAGI2/calendarView/delta"
    params = mock_request.call_args.kwargs["params"]
    assert params["startDateTime"].endswith("Z")
    assert params["endDateTime"].endswith("Z")
    assert page.next_cursor.endswith("$deltatoken=d1")
    assert page.next_page is None


@pytest.mark.asyncio
async def test_incremental_fetches_delta_link_verbatim(microsoft_service, microsoft_calendar):
    delta_link = "https://graph.microsoft.com/v1.0/me/calendarView/delta?$deltatoken=abc"
    with patch.object(microsoft_service, "_request", AsyncMock(return_value=(200, {
        "value": [], "@odata.nextLink": "https://graph.microsoft.com/v1.0/next"
    }))) as mock_request:
        page = await microsoft_service.fetch_event_page("token", microsoft_calendar, cursor=delta_link)

    assert mock_request.call_args.args[1] == delta_link
    assert mock_request.call_args.kwargs["params"] is None
    assert page.next_page == "https://graph.microsoft.com/v1.0/next"


@pytest.mark.asyncio
async def test_page_translation(microsoft_service, microsoft_calendar):
    with patch.object(microsoft_service, "_request", AsyncMock(return_value=(200, {
        "value": [
            GRAPH_EVENT,
            ALL_DAY_EVENT,
            {"id": "AAMkAD-3", "@removed": {"reason": "deleted"}},
            {"id": "AAMkAD-4", "isCancelled": True, "start": {}, "end": {}}
        ]
    }))):
        page = await microsoft_service.fetch_event_page("token", microsoft_calendar)

    timed, all_day, removed, cancelled = page.changes

    assert timed.change_tag == 'W/"DwAAABYAAAA"'
    assert timed.data.title == "1:1"
    assert timed.data.description == "Agenda\r\n- budget\r\n- hiring plan for the next quarter, with numbers"
    assert timed.data.location == "Teams"
    assert timed.data.status == EventStatus.TENTATIVE
    assert timed.data.start_time == datetime(2026, 2, 17, 14, tzinfo=timezone.utc)
    assert timed.data.end_time == datetime(2026, 2, 17, 14, 30, tzinfo=timezone.utc)
    assert timed.data.recurrence_rule == "FREQ=WEEKLY;INTERVAL=1;BYDAY=TU;COUNT=6"
    assert timed.data.reminders == [Reminder(method="popup", minutes=10)]
    ann, bob = timed.data.attendees
    assert ann.organizer and ann.response_status == "accepted"
    assert not bob.organizer and bob.response_status == "tentative"

    assert all_day.data.is_all_day
    assert all_day.data.title == "(No title)"
    assert all_day.data.start_time == datetime(2026, 2, 2, tzinfo=timezone.utc)
    assert all_day.data.end_time == datetime(2026, 2, 3, tzinfo=timezone.utc)

    assert removed.deleted
    assert cancelled.deleted


@pytest.mark.asyncio
async def test_gone_delta_link_is_cursor_expired(microsoft_service, microsoft_calendar):
    error = RemoteRequestFailed.from_status("Microsoft Graph GET failed", 410)
    with patch.object(microsoft_service, "_request", AsyncMock(side_effect=error)):
        with pytest.raises(CursorExpired):
            await microsoft_service.fetch_event_page("token", microsoft_calendar, cursor="https://graph/delta")


@pytest.mark.asyncio
async def test_list_calendars_colors_and_paging(microsoft_service):
    responses = [
        (200, {
            "value": [{"id": "c1", "name": "Calendar", "color": "lightGreen", "hexColor": "",
                       "isDefaultCalendar": True, "canEdit": True}],
            "@odata.nextLink": "https://graph.microsoft.com/v1.0/me/calendars?$skip=1"
        }),
        (200, {
            "value": [{"id": "c2", "name": "Shared", "color": "auto", "hexColor": "#E07A5F", "canEdit": False}]
        })
    ]
    with patch.object(microsoft_service, "_request", AsyncMock(side_effect=responses)) as mock_request:
        calendars = await microsoft_service.list_calendars("token")

    assert mock_request.call_args_list[0].args[1] == "/me/calendars"
    assert mock_request.call_args_list[1].args[1].endswith("$skip=1")
    assert calendars[0].color == "#4ADE80"
    assert calendars[0].is_primary
    assert not calendars[0].is_read_only
    assert calendars[1].color == "#E07A5F"
    assert calendars[1].is_read_only


def make_event(**kwargs):
    values = {
        "calendar_id": "cal-1",
        "title": "Offsite",
        "is_all_day": True,
        "start_time": datetime(2026, 2, 2, tzinfo=timezone.utc),
        "end_time": datetime(2026, 2, 3, tzinfo=timezone.utc),
    }
    values.update(kwargs)
    return Event(**values)


def test_all_day_body_uses_exclusive_midnight_end(microsoft_service):
    body = microsoft_service.build_event_body(make_event(recurrence_rule="FREQ=WEEKLY;BYDAY=MO;COUNT=3"))

    assert body["isAllDay"] is True
    assert body["start"] == {"dateTime": "2026-02-02T00:00:00.0000000", "timeZone": "UTC"}
    assert body["end"] == {"dateTime": "2026-02-03T00:00:00.0000000", "timeZone": "UTC"}
    assert body["recurrence"]["pattern"]["daysOfWeek"] == ["monday"]
    assert body["recurrence"]["range"] == {"startDate": "2026-02-02", "type": "numbered", "numberOfOccurrences": 3}


@pytest.mark.asyncio
async def test_create_posts_to_calendar(microsoft_service, microsoft_calendar):
    with patch.object(microsoft_service, "_request", AsyncMock(return_value=(201, {
        "id": "AAMkAD-new", "@odata.etag": 'W/"1"'
    }))) as mock_request:
        created = await microsoft_service.create_event("token", microsoft_calendar, make_event())

    assert created == Synced(external_id="AAMkAD-new", change_tag='W/"1"')
    method, url, token = mock_request.call_args.args
    assert (method, url) == ("POST", "/me/calendars/AAMkAGI2/events")
    assert mock_request.call_args.kwargs["body"]["subject"] == "Offsite"


@pytest.mark.asyncio
async def test_update_and_delete_target_event(microsoft_service, microsoft_calendar):
    pushed = make_event(remote=Synced(external_id="AAMkAD-1"))
    with patch.object(microsoft_service, "_request", AsyncMock(return_value=(200, {"@odata.etag": 'W/"2"'}))) as mock_request:
        assert await microsoft_service.update_event("token", microsoft_calendar, pushed) == 'W/"2"'
        assert mock_request.call_args.args[:2] == ("PATCH", "/me/events/AAMkAD-1")

        mock_request.return_value = (204, None)
        await microsoft_service.delete_event("token", microsoft_calendar, pushed)
        assert mock_request.call_args.args[:2] == ("DELETE", "/me/events/AAMkAD-1")


@pytest.mark.asyncio
async def test_delete_of_missing_event_succeeds(microsoft_service, microsoft_calendar):
    pushed = make_event(remote=Synced(external_id="AAMkAD-1"))
    error = RemoteRequestFailed.from_status("Microsoft Graph DELETE failed", 404)
    with patch.object(microsoft_service, "_request", AsyncMock(side_effect=error)):
        await microsoft_service.delete_event("token", microsoft_calendar, pushed)


def mock_session(status, payload=None, text=""):
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=payload)
    response.text = AsyncMock(return_value=text)
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)
    session = MagicMock()
    session.request.return_value = context
    return session


@pytest.mark.asyncio
async def test_request_sends_bearer_and_utc_preference(microsoft_service):
    session = mock_session(200, {"value": []})
    with patch.object(microsoft_service, "_session", return_value=session):
        status, payload = await microsoft_service._request("GET", "/me/calendars", "token-123")

    assert (status, payload) == (200, {"value": []})
    args, kwargs = session.request.call_args
    assert args == ("GET", "https://graph.microsoft.com/v1.0/me/calendars")
    assert kwargs["headers"]["Authorization"] == "Bearer token-123"
    assert kwargs["headers"]["Prefer"] == 'outlook.timezone="UTC", outlook.body-content-type="text"'


@pytest.mark.asyncio
async def test_request_maps_throttling_to_transient_failure(microsoft_service):
    session = mock_session(429, text="Too many requests")
    with patch.object(microsoft_service, "_session", return_value=session):
        with pytest.raises(RemoteRequestFailed) as exc_info:
            await microsoft_service._request("GET", "/me/calendars", "token")

    assert exc_info.value.status == 429
    assert exc_info.value.transient


def test_description_falls_back_to_preview_without_text_body():
    html = {"body": {"contentType": "html", "content": "<p>Agenda</p>"}, "bodyPreview": "Agenda"}
    assert graph_description(html) == "Agenda"
    assert graph_description({"body": {"contentType": "text", "content": "\r\n"}}) is None
    assert graph_description({}) is None

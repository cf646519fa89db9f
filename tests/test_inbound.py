import asyncio
import pytest
from datetime import datetime, timedelta, timezone

from calsync.auth.token_refresher import AccessTokenRefresher
from calsync.services.base import EventPage, InboundChange
from calsync.services.calendar_event import CalendarProvider, EventData, RemoteCalendar
from calsync.sync.calendar_list import CalendarListSynchronizer
from calsync.sync.errors import CursorExpired, RemoteRequestFailed, SyncCancelled
from calsync.sync.inbound import EventInboundSynchronizer

START = datetime(2026, 2, 17, 14, tzinfo=timezone.utc)


def upsert(external_id, title="Sync", tag='"1"'):
    return InboundChange(
        external_id=external_id,
        change_tag=tag,
        data=EventData(
            title=title,
            start_time=START,
            end_time=START + timedelta(hours=1),
            updated_at=datetime(2026, 2, 10, tzinfo=timezone.utc)
        )
    )


@pytest.fixture
def refresher(storage):
    return AccessTokenRefresher(storage, {})


@pytest.fixture
def inbound(storage, refresher):
    return EventInboundSynchronizer(storage, refresher)


@pytest.mark.asyncio
async def test_applying_the_same_page_twice_is_idempotent(
    storage, inbound, make_client, google_calendar, valid_credential
):
    await storage.save_calendar(google_calendar)
    client = make_client()
    client.fetch_event_page.return_value = EventPage(
        changes=[upsert("evt-1"), upsert("evt-2")], next_cursor="cursor-1"
    )

    await inbound.sync(client, google_calendar, valid_credential)
    first = sorted((e.id, e.external_id, e.updated_at) for e in await storage.list_events(google_calendar.id))

    await inbound.sync(client, google_calendar, valid_credential)
    second = sorted((e.id, e.external_id, e.updated_at) for e in await storage.list_events(google_calendar.id))

    assert first == second
    assert len(second) == 2


@pytest.mark.asyncio
async def test_expired_cursor_restarts_as_full_window(
    storage, inbound, make_client, google_calendar, valid_credential
):
    google_calendar.sync_cursor = "old-cursor"
    await storage.save_calendar(google_calendar)
    client = make_client()
    client.fetch_event_page.side_effect = [
        CursorExpired("sync token expired"),
        EventPage(changes=[upsert("evt-1")], next_cursor="fresh-cursor"),
    ]

    cursor = await inbound.sync(client, google_calendar, valid_credential, cursor="old-cursor")

    assert cursor == "fresh-cursor"
    first_call, second_call = client.fetch_event_page.call_args_list
    assert first_call.args[2] == "old-cursor"
    assert second_call.args[2] is None
    stored = await storage.get_calendar(google_calendar.id)
    assert stored.sync_cursor == "fresh-cursor"
    assert stored.last_sync_at is not None
    assert len(await storage.list_events(google_calendar.id)) == 1


@pytest.mark.asyncio
async def test_gone_during_full_window_is_not_retried(
    storage, inbound, make_client, google_calendar, valid_credential
):
    await storage.save_calendar(google_calendar)
    client = make_client()
    client.fetch_event_page.side_effect = RemoteRequestFailed.from_status("Google event list failed", 410)

    with pytest.raises(RemoteRequestFailed):
        await inbound.sync(client, google_calendar, valid_credential)
    assert client.fetch_event_page.await_count == 1


@pytest.mark.asyncio
async def test_pages_are_followed_and_cursor_saved_at_the_end(
    storage, inbound, make_client, google_calendar, valid_credential
):
    await storage.save_calendar(google_calendar)
    client = make_client()
    client.fetch_event_page.side_effect = [
        EventPage(changes=[upsert("evt-1")], next_page="page-2"),
        EventPage(changes=[upsert("evt-2")], next_cursor="cursor-2"),
    ]

    await inbound.sync(client, google_calendar, valid_credential)

    assert client.fetch_event_page.call_args_list[1].args[3] == "page-2"
    assert len(await storage.list_events(google_calendar.id)) == 2
    assert (await storage.get_calendar(google_calendar.id)).sync_cursor == "cursor-2"


@pytest.mark.asyncio
async def test_failure_midway_keeps_applied_pages_and_old_cursor(
    storage, inbound, make_client, google_calendar, valid_credential
):
    google_calendar.sync_cursor = "cursor-1"
    await storage.save_calendar(google_calendar)
    client = make_client()
    client.fetch_event_page.side_effect = [
        EventPage(changes=[upsert("evt-1")], next_page="page-2"),
        RemoteRequestFailed.from_status("Google event list failed", 500),
    ]

    with pytest.raises(RemoteRequestFailed):
        await inbound.sync(client, google_calendar, valid_credential, cursor="cursor-1")

    assert len(await storage.list_events(google_calendar.id)) == 1
    stored = await storage.get_calendar(google_calendar.id)
    assert stored.sync_cursor == "cursor-1"
    assert stored.last_sync_at is None


@pytest.mark.asyncio
async def test_cancelled_event_is_deleted(storage, inbound, make_client, google_calendar, valid_credential):
    await storage.save_calendar(google_calendar)
    await storage.upsert_remote_event(google_calendar.id, "evt-1", '"1"', upsert("evt-1").data)
    client = make_client()
    client.fetch_event_page.return_value = EventPage(
        changes=[InboundChange(external_id="evt-1", deleted=True), InboundChange(external_id="unknown", deleted=True)],
        next_cursor="cursor-2"
    )

    await inbound.sync(client, google_calendar, valid_credential, cursor="cursor-1")

    assert await storage.list_events(google_calendar.id) == []


@pytest.mark.asyncio
async def test_local_unsynced_events_survive_inbound(
    storage, inbound, make_client, google_calendar, valid_credential
):
    await storage.save_calendar(google_calendar)
    local = await storage.create_local_event(google_calendar.id, upsert("x", title="Draft").data)
    client = make_client()
    client.fetch_event_page.return_value = EventPage(changes=[upsert("evt-1")], next_cursor="c")

    await inbound.sync(client, google_calendar, valid_credential)

    assert (await storage.get_event(local.id)).title == "Draft"


@pytest.mark.asyncio
async def test_cancel_between_pages(storage, inbound, make_client, google_calendar, valid_credential):
    await storage.save_calendar(google_calendar)
    cancel = asyncio.Event()
    client = make_client()

    async def first_page(*args):
        cancel.set()
        return EventPage(changes=[upsert("evt-1")], next_page="page-2")

    client.fetch_event_page.side_effect = first_page

    with pytest.raises(SyncCancelled):
        await inbound.sync(client, google_calendar, valid_credential, cancel=cancel)

    assert client.fetch_event_page.await_count == 1
    assert (await storage.get_calendar(google_calendar.id)).sync_cursor is None


@pytest.mark.asyncio
async def test_calendar_list_sync_preserves_user_settings(storage, refresher, make_client, valid_credential):
    client = make_client()
    client.list_calendars.return_value = [
        RemoteCalendar(external_id="me@example.com", name="Me", color="#9fe1e7", is_primary=True),
        RemoteCalendar(external_id="team", name="Team", is_read_only=True),
    ]
    synchronizer = CalendarListSynchronizer(storage, refresher)

    created = await synchronizer.sync(client, "acct-1", valid_credential)
    assert [c.name for c in created] == ["Me", "Team"]
    assert created[0].is_primary
    assert created[1].color == "#3B82F6"

    hidden = created[0].model_copy(update={"is_visible": False, "color": "#000000"})
    await storage.save_calendar(hidden)
    client.list_calendars.return_value = [
        RemoteCalendar(external_id="me@example.com", name="Me (renamed)", color="#ffffff", is_primary=False),
    ]

    updated = await synchronizer.sync(client, "acct-1", valid_credential)

    assert updated[0].id == created[0].id
    assert updated[0].name == "Me (renamed)"
    assert updated[0].is_primary
    assert not updated[0].is_visible
    assert updated[0].color == "#000000"
    # Calendars missing from the listing are kept
    assert len(await storage.list_calendars("acct-1", CalendarProvider.GOOGLE)) == 2

import pytest
import pytest_asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from calsync.services.base import EventPage
from calsync.services.calendar_event import Calendar, CalendarProvider, Credential, utcnow
from calsync.sync.storage import SyncStorageManager
from calsync.utils.config import settings


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Pin the local zone and keep tests off Redis"""
    monkeypatch.setattr(settings, "LOCAL_TIMEZONE", "UTC")
    monkeypatch.setattr(settings, "REDIS_HOST", "")
    monkeypatch.setattr(settings, "GOOGLE_CLIENT_ID", "google-client")
    monkeypatch.setattr(settings, "GOOGLE_CLIENT_SECRET", "google-secret")
    monkeypatch.setattr(settings, "MS_CLIENT_ID", "ms-client")
    monkeypatch.setattr(settings, "MS_CLIENT_SECRET", "ms-secret")


@pytest_asyncio.fixture
async def storage(tmp_path):
    """File-backed storage in a temporary directory"""
    manager = SyncStorageManager(use_redis=False, storage_path=str(tmp_path))
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
def valid_credential():
    return Credential(
        account_id="acct-1",
        provider=CalendarProvider.GOOGLE,
        access_token="valid-token",
        refresh_token="refresh-token",
        expires_at=utcnow() + timedelta(hours=1)
    )


@pytest.fixture
def expired_credential():
    return Credential(
        account_id="acct-1",
        provider=CalendarProvider.GOOGLE,
        access_token="stale-token",
        refresh_token="refresh-token",
        expires_at=utcnow() - timedelta(minutes=10)
    )


@pytest.fixture
def google_calendar():
    return Calendar(
        account_id="acct-1",
        provider=CalendarProvider.GOOGLE,
        external_id="primary@example.com",
        name="Work"
    )


@pytest.fixture
def microsoft_calendar():
    return Calendar(
        account_id="acct-1",
        provider=CalendarProvider.MICROSOFT,
        external_id="AAMkAGI2",
        name="Calendar"
    )


@pytest.fixture
def make_client():
    """Factory for provider clients whose network methods are AsyncMocks"""
    def factory(provider=CalendarProvider.GOOGLE):
        client = MagicMock()
        client.provider = provider
        client.list_calendars = AsyncMock(return_value=[])
        client.fetch_event_page = AsyncMock(return_value=EventPage(next_cursor="cursor-1"))
        client.create_event = AsyncMock()
        client.update_event = AsyncMock()
        client.delete_event = AsyncMock()
        client.refresh_token = AsyncMock()
        client.close = AsyncMock()
        return client
    return factory

import asyncio
import logging
from datetime import timedelta, timezone
from typing import Optional

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from calsync.services.calendar_event import ClientCredentials, Credential, TokenGrant, utcnow
from calsync.sync.errors import TokenRefreshFailed
from calsync.utils.config import settings

# Set up logging
logger = logging.getLogger(__name__)

# OAuth scope for Google Calendar API
SCOPES = [
    'https://www.googleapis.com/auth/calendar',
    'https://www.googleapis.com/auth/calendar.events'
]


class GoogleCalendarAuth:
    def __init__(self, client: Optional[ClientCredentials] = None):
        """Initialize Google Calendar authentication"""
        self.client = client or ClientCredentials.google_from_settings()
        self.token_uri = settings.GOOGLE_TOKEN_URI

    def get_credentials(self, credential: Credential) -> Credentials:
        """Create Google OAuth credentials from a stored credential"""
        return Credentials(
            token=credential.access_token,
            refresh_token=credential.refresh_token,
            token_uri=self.token_uri,
            client_id=self.client.client_id,
            client_secret=self.client.client_secret,
            scopes=SCOPES
        )

    async def refresh_token(self, credential: Credential) -> TokenGrant:
        """Exchange the refresh token for a new access token"""
        if not all([self.client.client_id, self.client.client_secret]):
            raise TokenRefreshFailed("Google Calendar API credentials not configured")

        google_credentials = self.get_credentials(credential)
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.run_in_executor(None, google_credentials.refresh, Request()),
                timeout=settings.HTTP_TIMEOUT_SECONDS
            )
        except (GoogleAuthError, asyncio.TimeoutError) as e:
            raise TokenRefreshFailed(f"Failed to refresh Google token: {e}") from e

        # google-auth reports expiry as naive UTC
        if google_credentials.expiry:
            expiry = google_credentials.expiry.replace(tzinfo=timezone.utc)
        else:
            expiry = utcnow() + timedelta(hours=1)
        new_refresh_token = google_credentials.refresh_token
        return TokenGrant(
            access_token=google_credentials.token,
            expires_at=expiry,
            refresh_token=new_refresh_token if new_refresh_token != credential.refresh_token else None
        )

    def get_calendar_service(self, access_token: str):
        """Get Google Calendar API service for an already valid access token"""
        return build(
            'calendar',
            'v3',
            credentials=Credentials(token=access_token),
            cache_discovery=False,
            static_discovery=True
        )

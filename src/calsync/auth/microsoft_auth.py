import asyncio
import logging
from datetime import timedelta
from typing import Optional

import msal

from calsync.services.calendar_event import ClientCredentials, Credential, TokenGrant, utcnow
from calsync.sync.errors import TokenRefreshFailed
from calsync.utils.config import settings

# Set up logging
logger = logging.getLogger(__name__)

# OAuth scopes for Microsoft Graph Calendar access; MSAL adds offline_access itself
SCOPES = [
    'Calendars.ReadWrite',
    'User.Read'
]


class MicrosoftGraphAuth:
    def __init__(self, client: Optional[ClientCredentials] = None):
        """Initialize Microsoft Graph authentication"""
        self.client = client or ClientCredentials.microsoft_from_settings()

    def _tenant(self, credential: Credential) -> str:
        # Credential tenant, then the client default, then the common endpoint
        return credential.tenant_id or self.client.tenant_id or "common"

    def _create_app(self, tenant: str) -> msal.ConfidentialClientApplication:
        return msal.ConfidentialClientApplication(
            self.client.client_id,
            authority=f"https://login.microsoftonline.com/{tenant}",
            client_credential=self.client.client_secret,
            timeout=settings.HTTP_TIMEOUT_SECONDS
        )

    async def refresh_token(self, credential: Credential) -> TokenGrant:
        """Refresh the access token using the refresh token"""
        if not all([self.client.client_id, self.client.client_secret]):
            raise TokenRefreshFailed("Microsoft Graph API credentials not configured")

        loop = asyncio.get_running_loop()
        try:
            app = self._create_app(self._tenant(credential))
            result = await loop.run_in_executor(
                None,
                lambda: app.acquire_token_by_refresh_token(
                    refresh_token=credential.refresh_token,
                    scopes=SCOPES
                )
            )
        except Exception as e:
            # MSAL surfaces transport failures as requests exceptions
            raise TokenRefreshFailed(f"Failed to refresh Microsoft token: {e}") from e

        if "error" in result or not result.get("access_token"):
            raise TokenRefreshFailed(
                f"Failed to refresh Microsoft token: {result.get('error_description', result.get('error'))}"
            )

        return TokenGrant(
            access_token=result["access_token"],
            expires_at=utcnow() + timedelta(seconds=int(result.get("expires_in", 3600))),
            refresh_token=result.get("refresh_token")
        )

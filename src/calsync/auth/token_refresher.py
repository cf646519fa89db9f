"""
Access Token Refresher

Returns a valid access token for a stored credential, refreshing and
persisting it when expired. Refreshes are serialized per (account, provider):
a caller that waited on the lock re-reads the credential and reuses the token
the previous holder obtained.
"""

import asyncio
import logging
import weakref
from typing import Dict, Optional, Protocol, Tuple

from calsync.services.calendar_event import CalendarProvider, Credential, TokenGrant
from calsync.sync.errors import CredentialMissing
from calsync.sync.storage import SyncStorageManager

# Set up logging
logger = logging.getLogger(__name__)


class TokenExchanger(Protocol):
    async def refresh_token(self, credential: Credential) -> TokenGrant:
        ...


class AccessTokenRefresher:
    def __init__(self, storage: SyncStorageManager, exchangers: Dict[CalendarProvider, TokenExchanger]):
        self.storage = storage
        self.exchangers = exchangers
        # A lock lives only while some caller holds or waits on it
        self._locks: "weakref.WeakValueDictionary[Tuple[str, CalendarProvider], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, credential: Credential) -> asyncio.Lock:
        key = (credential.account_id, credential.provider)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def get_access_token(self, credential: Credential) -> str:
        """Return a currently valid access token, refreshing if needed"""
        if not credential.is_expired():
            return credential.access_token

        async with self._lock_for(credential):
            current: Optional[Credential] = await self.storage.get_credential(
                credential.account_id, credential.provider
            )
            current = current or credential
            if not current.is_expired():
                logger.debug(f"Reusing token refreshed concurrently for {credential.account_id}/{credential.provider.value}")
                return current.access_token

            if not current.refresh_token:
                raise CredentialMissing(
                    f"No refresh token available for {credential.account_id}/{credential.provider.value}"
                )

            exchanger = self.exchangers.get(credential.provider)
            if exchanger is None:
                raise CredentialMissing(f"No token exchange configured for provider {credential.provider.value}")

            grant = await exchanger.refresh_token(current)
            refreshed = current.model_copy(update={
                "access_token": grant.access_token,
                "expires_at": grant.expires_at,
                "refresh_token": grant.refresh_token or current.refresh_token,
            })
            await self.storage.save_credential(refreshed)
            logger.info(f"Refreshed {credential.provider.value} access token for account {credential.account_id}")
            return refreshed.access_token

"""
Sync Errors

Error taxonomy shared by the provider adapters and the synchronizers.

- CredentialMissing and TokenRefreshFailed abort the pass for an account/provider.
- CursorExpired never leaves the inbound synchronizer; it triggers a full resync.
- RemoteRequestFailed aborts inbound passes and is logged and swallowed by the
  outbound pusher.
- TranslationSkipped is not a failure: the recurrence degrades to None.
"""

from typing import Optional


class CalendarSyncError(Exception):
    """Base class for calendar synchronization errors"""


class CredentialMissing(CalendarSyncError):
    """The stored credential has no refresh token and the access token expired"""


class TokenRefreshFailed(CalendarSyncError):
    """The provider rejected the refresh token exchange"""


class CursorExpired(CalendarSyncError):
    """The provider no longer accepts the stored sync cursor"""


class RemoteRequestFailed(CalendarSyncError):
    """A provider request failed with a non-2xx status, a timeout or a connection error"""

    def __init__(self, message: str, status: Optional[int] = None, transient: bool = False):
        super().__init__(message)
        self.status = status
        self.transient = transient

    @classmethod
    def from_status(cls, message: str, status: int) -> "RemoteRequestFailed":
        return cls(f"{message}: HTTP {status}", status=status, transient=status == 429 or status >= 500)


class TranslationSkipped(CalendarSyncError):
    """A recurrence pattern could not be translated"""


class SyncCancelled(CalendarSyncError):
    """The caller cancelled an inbound pass between pages"""


class CalendarNotFound(CalendarSyncError):
    """No local calendar matches the requested id"""

"""
errors.py - Typed errors and sync results

Local failures are fatal for the calling operation; remote failures are
SyncErrors and only ever reach the caller as a failed SyncResult.
"""

from typing import Optional


class LocalStoreError(Exception):
    """The local store could not complete a read or write."""


class SyncError(Exception):
    """Base class for every remote synchronization failure."""


class RemoteNetworkError(SyncError):
    """Remote unreachable or answered with a transient failure."""


class RemoteTimeoutError(RemoteNetworkError):
    """Remote call exceeded its time budget."""


class RemoteRejectedError(SyncError):
    """Remote refused the write (malformed payload, missing document, ...)."""


class RemoteAuthError(SyncError):
    """Remote denied the request for the current identity."""


class SyncResult:
    """Outcome of one internal sync attempt."""

    __slots__ = ("ok", "error")

    def __init__(self, ok: bool, error: Optional[SyncError] = None):
        self.ok = ok
        self.error = error

    @classmethod
    def success(cls) -> "SyncResult":
        return cls(True)

    @classmethod
    def failure(cls, error: SyncError) -> "SyncResult":
        return cls(False, error)

    def __repr__(self):
        if self.ok:
            return "SyncResult(ok)"
        return f"SyncResult(error={self.error!r})"

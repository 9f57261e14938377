"""Synchronization error taxonomy.

Every error carries the calendar it applies to so that one calendar's
failure can be reported without affecting the others.

| Error | Raised when | Handling |
| --- | --- | --- |
| `TransientFetchError` | network failure, timeout, rate limit | retried with backoff |
| `TokenInvalidError` | remote rejects the sync token | one full resync per sync |
| `FatalSyncError` | auth rejected, calendar missing, repeated invalidation | calendar marked failed |
| `MalformedDataError` | a delta fails structural validation | record skipped, logged |
"""

from __future__ import annotations


class SyncError(Exception):
    """Base exception for synchronization errors."""

    def __init__(
        self,
        message: str,
        calendar_id: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.calendar_id = calendar_id
        self.status_code = status_code

    def __str__(self) -> str:
        message = super().__str__()
        if self.calendar_id:
            return f"[{self.calendar_id}] {message}"
        return message


class TransientFetchError(SyncError):
    """Raised for failures that are worth retrying (network, rate limit, timeout)."""

    def __init__(
        self,
        message: str,
        calendar_id: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, calendar_id=calendar_id, status_code=status_code)
        self.retry_after = retry_after


class TokenInvalidError(SyncError):
    """Raised when the remote source reports the sync token as expired or unknown."""

    pass


class FatalSyncError(SyncError):
    """Raised for failures that retrying within the same cycle cannot fix."""

    pass


class MalformedDataError(SyncError):
    """Raised when a single delta fails structural validation."""

    def __init__(
        self,
        message: str,
        calendar_id: str | None = None,
        event_id: str | None = None,
    ):
        super().__init__(message, calendar_id=calendar_id)
        self.event_id = event_id

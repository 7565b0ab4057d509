"""Custom exception hierarchy for fieldsync."""

from __future__ import annotations

from typing import Literal

RemoteErrorKind = Literal["quota", "network", "other"]


class FieldSyncError(Exception):
    """Base exception for all fieldsync errors."""


class FieldSyncConfigError(FieldSyncError):
    """Invalid or missing configuration."""


class StorageError(FieldSyncError):
    """Local store failure."""


class StorageQuotaExceededError(StorageError):
    """The local database ran out of space.

    Bulk writes are chunked, so ``committed`` records written by earlier
    chunks are durable and the operation can be resumed.
    """

    def __init__(self, message: str, *, committed: int = 0) -> None:
        self.committed = committed
        super().__init__(message)


class RemoteStoreError(FieldSyncError):
    """The remote document store rejected or could not receive a request."""

    kind: RemoteErrorKind = "other"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        collection: str = "",
    ) -> None:
        self.status_code = status_code
        self.collection = collection
        super().__init__(message)


class RemoteQuotaExceededError(RemoteStoreError):
    """Remote quota or resource exhaustion.

    Replay treats this as a circuit breaker: the pass halts and the queue
    is left untouched until the next scheduled trigger.
    """

    kind: RemoteErrorKind = "quota"


class RemoteUnavailableError(RemoteStoreError):
    """Network failure, timeout or server-side outage."""

    kind: RemoteErrorKind = "network"


class ImportSourceError(FieldSyncError):
    """The bulk import source could not be fetched or parsed."""

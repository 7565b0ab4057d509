"""fieldsync - Offline-first layered record store with queued replay to a remote document store."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("fieldsync")
except PackageNotFoundError:
    __version__ = "0+local"
from fieldsync.client import FieldSyncClient
from fieldsync.config import FieldSyncConfig
from fieldsync.exceptions import (
    FieldSyncConfigError,
    FieldSyncError,
    ImportSourceError,
    RemoteQuotaExceededError,
    RemoteStoreError,
    RemoteUnavailableError,
    StorageError,
    StorageQuotaExceededError,
)
from fieldsync.models import (
    BaseRecord,
    DynamicOverlay,
    ImportResult,
    Layer,
    MergedView,
    PendingWriteEntry,
    SurveyOverlay,
    SyncProgress,
    SyncReport,
    WriteResult,
)

__all__ = [
    "__version__",
    "BaseRecord",
    "DynamicOverlay",
    "FieldSyncClient",
    "FieldSyncConfig",
    "FieldSyncConfigError",
    "FieldSyncError",
    "ImportResult",
    "ImportSourceError",
    "Layer",
    "MergedView",
    "PendingWriteEntry",
    "RemoteQuotaExceededError",
    "RemoteStoreError",
    "RemoteUnavailableError",
    "StorageError",
    "StorageQuotaExceededError",
    "SurveyOverlay",
    "SyncProgress",
    "SyncReport",
    "WriteResult",
]

"""Client configuration for fieldsync."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from fieldsync._constants import (
    BASE_COLLECTION,
    DEFAULT_DIRECT_WRITE_TIMEOUT,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_SYNC_INTERVAL,
    DYNAMIC_COLLECTION,
    IMPORT_CHUNK_SIZE,
    MAX_BATCH_SIZE,
    REMOTE_BATCH_LIMIT,
    SURVEY_COLLECTION,
)
from fieldsync.exceptions import FieldSyncConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class FieldSyncConfig:
    """Client configuration.

    Parameters
    ----------
    database_path : str
        SQLite file backing the local store and the pending-write queue.
    remote_base_url : str
        Root URL of the remote document store API.
    api_key : str or None
        Bearer token sent with every remote request.
    base_collection, survey_collection, dynamic_collection : str
        Remote collection names for the three data layers.
    max_batch_size : int
        Entries per atomic replay commit. Must not exceed the remote
        store's batch ceiling (500).
    import_chunk_size : int
        Records per local transaction during bulk import.
    sync_interval : float
        Seconds between scheduled replay passes while online.
    direct_write_timeout : float
        Upper bound for the optimistic direct write before it falls back
        to the pending queue.
    request_timeout : float
        Total timeout for batch commits and collection queries.
    bulk_source_url : str or None
        Static JSON document used for the initial base import.
    auto_sync : bool
        Start the background scheduler when the client opens.
    """

    database_path: str = "fieldsync.db"
    remote_base_url: str = ""
    api_key: str | None = None
    base_collection: str = BASE_COLLECTION
    survey_collection: str = SURVEY_COLLECTION
    dynamic_collection: str = DYNAMIC_COLLECTION
    max_batch_size: int = MAX_BATCH_SIZE
    import_chunk_size: int = IMPORT_CHUNK_SIZE
    sync_interval: float = DEFAULT_SYNC_INTERVAL
    direct_write_timeout: float = DEFAULT_DIRECT_WRITE_TIMEOUT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    bulk_source_url: str | None = None
    auto_sync: bool = True

    def __post_init__(self) -> None:
        if not 1 <= self.max_batch_size <= REMOTE_BATCH_LIMIT:
            raise FieldSyncConfigError(
                f"max_batch_size must be between 1 and {REMOTE_BATCH_LIMIT}, got {self.max_batch_size}"
            )
        if self.import_chunk_size <= 0:
            raise FieldSyncConfigError(f"import_chunk_size must be positive, got {self.import_chunk_size}")
        if self.sync_interval <= 0:
            raise FieldSyncConfigError(f"sync_interval must be positive, got {self.sync_interval}")
        if self.direct_write_timeout <= 0:
            raise FieldSyncConfigError(f"direct_write_timeout must be positive, got {self.direct_write_timeout}")

    @classmethod
    def from_env(cls, **overrides: Any) -> FieldSyncConfig:
        """Create configuration from ``FIELDSYNC_*`` environment variables.

        Explicit keyword arguments override environment values.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "FIELDSYNC_DATABASE_PATH": "database_path",
            "FIELDSYNC_REMOTE_BASE_URL": "remote_base_url",
            "FIELDSYNC_API_KEY": "api_key",
            "FIELDSYNC_BULK_SOURCE_URL": "bulk_source_url",
        }
        _ENV_INT_MAP = {
            "FIELDSYNC_MAX_BATCH_SIZE": "max_batch_size",
            "FIELDSYNC_IMPORT_CHUNK_SIZE": "import_chunk_size",
        }
        _ENV_FLOAT_MAP = {
            "FIELDSYNC_SYNC_INTERVAL": "sync_interval",
            "FIELDSYNC_DIRECT_WRITE_TIMEOUT": "direct_write_timeout",
            "FIELDSYNC_REQUEST_TIMEOUT": "request_timeout",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        try:
            for env_key, field_name in _ENV_INT_MAP.items():
                val = env.get(env_key)
                if val is not None and field_name not in overrides:
                    config_kwargs[field_name] = int(val)
            for env_key, field_name in _ENV_FLOAT_MAP.items():
                val = env.get(env_key)
                if val is not None and field_name not in overrides:
                    config_kwargs[field_name] = float(val)
        except ValueError as exc:
            raise FieldSyncConfigError(f"Invalid numeric environment value: {exc}") from exc

        if "auto_sync" not in overrides:
            config_kwargs["auto_sync"] = _env_bool(env.get("FIELDSYNC_AUTO_SYNC"), True)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)

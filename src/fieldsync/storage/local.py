"""Durable local document store.

One SQLite file holds the three data layers. Each table stores the record
as a JSON document next to a handful of indexed columns, so lookups by
secondary attributes (booth, ward, voting status) never scan the table.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import sqlite3
from collections.abc import AsyncIterator, Iterable, Mapping
from typing import Any

import aiosqlite

from fieldsync._constants import IMPORT_CHUNK_SIZE, TABLE_BASE, TABLE_DYNAMIC, TABLE_SURVEY
from fieldsync.exceptions import StorageError, StorageQuotaExceededError
from fieldsync.ingestion.normalize import normalize_key, parse_bool
from fieldsync.models._base import FieldSyncModel
from fieldsync.models.records import BaseRecord, DynamicOverlay, SurveyOverlay

_logger = logging.getLogger(__name__)

Record = BaseRecord | SurveyOverlay | DynamicOverlay

TABLE_MODELS: dict[str, type[FieldSyncModel]] = {
    TABLE_BASE: BaseRecord,
    TABLE_SURVEY: SurveyOverlay,
    TABLE_DYNAMIC: DynamicOverlay,
}

TABLE_INDEXES: dict[str, tuple[str, ...]] = {
    TABLE_BASE: ("voter_id", "booth_number", "prabhag", "gender", "surname"),
    TABLE_SURVEY: ("support_status", "updated_at"),
    TABLE_DYNAMIC: ("has_voted", "support_status", "updated_at"),
}

# Indexed attributes stored as 0/1 so scans match however the value was written.
_BOOLEAN_INDEXES: frozenset[str] = frozenset({"has_voted"})


def _is_storage_full(exc: sqlite3.Error) -> bool:
    if getattr(exc, "sqlite_errorname", "") == "SQLITE_FULL":
        return True
    return "database or disk is full" in str(exc).lower()


def _index_value(record: FieldSyncModel, name: str) -> Any:
    if name in type(record).model_fields:
        value = getattr(record, name)
    else:
        fields = getattr(record, "fields", {})
        value = fields.get(name)
    return _sql_value(name, value)


def _sql_value(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in _BOOLEAN_INDEXES:
        return int(parse_bool(value))
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float, str)):
        return value
    return str(value)


class LocalStore:
    """Async facade over the SQLite file.

    Usage::

        async with LocalStore("field.db") as store:
            await store.bulk_put("base", records)
            voters = await store.scan_by_index("base", "booth_number", "12")
    """

    def __init__(self, path: str, *, chunk_size: int = IMPORT_CHUNK_SIZE) -> None:
        self._path = path
        self._chunk_size = chunk_size
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        if self._db is not None:
            return
        self._db = await aiosqlite.connect(self._path)
        statements = ["CREATE TABLE IF NOT EXISTS meta (key TEXT PRIMARY KEY, value TEXT NOT NULL)"]
        for table, indexes in TABLE_INDEXES.items():
            columns = "".join(f", ix_{name}" for name in indexes)
            statements.append(f"CREATE TABLE IF NOT EXISTS {table} (key TEXT PRIMARY KEY, doc TEXT NOT NULL{columns})")
            statements.extend(
                f"CREATE INDEX IF NOT EXISTS idx_{table}_{name} ON {table}(ix_{name})" for name in indexes
            )
        await self._db.executescript(";\n".join(statements) + ";")
        await self._db.commit()
        _logger.debug("Local store opened at %s", self._path)

    async def close(self) -> None:
        db = self._db
        self._db = None
        if db is not None:
            await db.close()

    async def __aenter__(self) -> LocalStore:
        await self.open()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageError("Local store is not open")
        return self._db

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialize a write transaction on the shared connection.

        Commits on exit, rolls back on any error. A full disk surfaces as
        :class:`StorageQuotaExceededError`.
        """
        db = self.db
        async with self._write_lock:
            try:
                yield db
                await db.commit()
            except sqlite3.Error as exc:
                await db.rollback()
                if _is_storage_full(exc):
                    raise StorageQuotaExceededError(f"Local store is full: {exc}") from exc
                raise StorageError(f"Local store write failed: {exc}") from exc
            except BaseException:
                await db.rollback()
                raise

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    @staticmethod
    def _model(table: str) -> type[FieldSyncModel]:
        model = TABLE_MODELS.get(table)
        if model is None:
            raise ValueError(f"Unknown table {table!r}; expected one of {sorted(TABLE_MODELS)}")
        return model

    def _coerce(self, table: str, record: FieldSyncModel | Mapping[str, Any]) -> FieldSyncModel:
        model = self._model(table)
        if isinstance(record, model):
            return record
        if isinstance(record, FieldSyncModel):
            raise TypeError(f"{type(record).__name__} cannot be stored in {table!r}")
        return model.model_validate(record)

    def _row(self, table: str, record: FieldSyncModel) -> tuple[Any, ...]:
        key = getattr(record, "entity_id")
        values = [_index_value(record, name) for name in TABLE_INDEXES[table]]
        return (key, json.dumps(record.to_row(), ensure_ascii=False), *values)

    def _upsert_sql(self, table: str) -> str:
        indexes = TABLE_INDEXES[table]
        columns = ", ".join(["key", "doc", *(f"ix_{name}" for name in indexes)])
        placeholders = ", ".join("?" for _ in range(len(indexes) + 2))
        return f"INSERT OR REPLACE INTO {table} ({columns}) VALUES ({placeholders})"

    def _load(self, table: str, doc: str) -> Record:
        return self._model(table).model_validate(json.loads(doc))  # type: ignore[return-value]

    async def get(self, table: str, key: Any) -> Record | None:
        self._model(table)
        async with self.db.execute(f"SELECT doc FROM {table} WHERE key = ?", (normalize_key(key),)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return self._load(table, row[0])

    async def put(self, table: str, record: FieldSyncModel | Mapping[str, Any]) -> Record:
        """Upsert one document. The previous version is replaced wholesale."""
        coerced = self._coerce(table, record)
        async with self.transaction() as db:
            await db.execute(self._upsert_sql(table), self._row(table, coerced))
        return coerced  # type: ignore[return-value]

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    async def bulk_put(
        self,
        table: str,
        records: Iterable[FieldSyncModel | Mapping[str, Any]],
        *,
        chunk_size: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> int:
        """Upsert many documents, one transaction per chunk.

        *records* is consumed lazily: each chunk is validated and serialized
        just before it is written, and control returns to the event loop
        between chunks. When *cancel* is set no further chunk is started;
        chunks already written stay committed. Returns the number of records
        committed.
        """
        size = chunk_size or self._chunk_size
        if size <= 0:
            raise ValueError(f"chunk_size must be positive, got {size}")
        sql = self._upsert_sql(table)
        pending = iter(records)

        committed = 0
        while True:
            if cancel is not None and cancel.is_set():
                _logger.info("Bulk write to %s cancelled after %d records", table, committed)
                break
            chunk = [self._row(table, self._coerce(table, record)) for record in itertools.islice(pending, size)]
            if not chunk:
                break
            try:
                async with self.transaction() as db:
                    await db.executemany(sql, chunk)
            except StorageQuotaExceededError as exc:
                raise StorageQuotaExceededError(str(exc), committed=committed) from exc
            committed += len(chunk)
            _logger.debug("Committed %d records to %s", committed, table)
            await asyncio.sleep(0)
        return committed

    async def scan_by_index(self, table: str, index: str, value: Any) -> list[Record]:
        self._model(table)
        if index not in TABLE_INDEXES[table]:
            raise ValueError(f"Table {table!r} has no index {index!r}")
        sql = f"SELECT doc FROM {table} WHERE ix_{index} = ? ORDER BY key"
        async with self.db.execute(sql, (_sql_value(index, value),)) as cursor:
            rows = await cursor.fetchall()
        return [self._load(table, row[0]) for row in rows]

    async def all(self, table: str) -> list[Record]:
        self._model(table)
        async with self.db.execute(f"SELECT doc FROM {table} ORDER BY key") as cursor:
            rows = await cursor.fetchall()
        return [self._load(table, row[0]) for row in rows]

    async def keys(self, table: str) -> list[str]:
        self._model(table)
        async with self.db.execute(f"SELECT key FROM {table} ORDER BY key") as cursor:
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def count(self, table: str) -> int:
        self._model(table)
        async with self.db.execute(f"SELECT COUNT(*) FROM {table}") as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def delete(self, table: str, key: Any) -> None:
        self._model(table)
        async with self.transaction() as db:
            await db.execute(f"DELETE FROM {table} WHERE key = ?", (normalize_key(key),))

    async def clear(self, table: str) -> None:
        self._model(table)
        async with self.transaction() as db:
            await db.execute(f"DELETE FROM {table}")

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    async def get_meta(self, key: str) -> str | None:
        async with self.db.execute("SELECT value FROM meta WHERE key = ?", (key,)) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else None

    async def set_meta(self, key: str, value: str) -> None:
        async with self.transaction() as db:
            await db.execute("INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, value))

    async def delete_meta(self, key: str) -> None:
        async with self.transaction() as db:
            await db.execute("DELETE FROM meta WHERE key = ?", (key,))

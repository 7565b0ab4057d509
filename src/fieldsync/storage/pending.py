"""Durable queue of writes awaiting remote acknowledgment."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from fieldsync.ingestion.normalize import normalize_key
from fieldsync.models.sync import PendingWriteEntry
from fieldsync.storage.local import LocalStore

_logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS pending_writes (
    local_id INTEGER PRIMARY KEY AUTOINCREMENT,
    target_collection TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at REAL NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_pending_created ON pending_writes(created_at, local_id);
CREATE INDEX IF NOT EXISTS idx_pending_target ON pending_writes(target_collection, entity_id);
"""

_COLUMNS = "local_id, target_collection, entity_id, payload, created_at, attempts"


def _entry(row: Any) -> PendingWriteEntry:
    return PendingWriteEntry(
        local_id=row[0],
        target_collection=row[1],
        entity_id=row[2],
        payload=json.loads(row[3]),
        created_at=row[4],
        attempts=row[5],
    )


class PendingWriteQueue:
    """FIFO log of writes that still have to reach the remote store.

    Entries are replayed in ``created_at`` order, ties broken by insertion
    order. The queue does not coalesce: callers that write the same field
    of the same entity repeatedly should merge those payloads before
    enqueueing.
    """

    def __init__(self, store: LocalStore, *, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    async def initialize(self) -> None:
        await self._store.db.executescript(_SCHEMA)
        await self._store.db.commit()

    async def enqueue(self, target_collection: str, entity_id: str, payload: Mapping[str, Any]) -> int:
        key = normalize_key(entity_id)
        async with self._store.transaction() as db:
            cursor = await db.execute(
                "INSERT INTO pending_writes (target_collection, entity_id, payload, created_at, attempts)"
                " VALUES (?, ?, ?, ?, 0)",
                (target_collection, key, json.dumps(dict(payload), ensure_ascii=False), self._clock()),
            )
            local_id = cursor.lastrowid
        _logger.debug("Queued write %s for %s/%s", local_id, target_collection, key)
        return int(local_id)  # type: ignore[arg-type]

    async def list_all(self) -> list[PendingWriteEntry]:
        sql = f"SELECT {_COLUMNS} FROM pending_writes ORDER BY created_at, local_id"
        async with self._store.db.execute(sql) as cursor:
            rows = await cursor.fetchall()
        return [_entry(row) for row in rows]

    async def for_entity(self, target_collection: str, entity_id: str) -> list[PendingWriteEntry]:
        sql = (
            f"SELECT {_COLUMNS} FROM pending_writes"
            " WHERE target_collection = ? AND entity_id = ? ORDER BY created_at, local_id"
        )
        async with self._store.db.execute(sql, (target_collection, normalize_key(entity_id))) as cursor:
            rows = await cursor.fetchall()
        return [_entry(row) for row in rows]

    async def count(self) -> int:
        async with self._store.db.execute("SELECT COUNT(*) FROM pending_writes") as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def remove(self, local_id: int) -> None:
        await self.remove_many([local_id])

    async def remove_many(self, local_ids: Iterable[int]) -> None:
        """Drop acknowledged entries in a single transaction."""
        ids = [(int(local_id),) for local_id in local_ids]
        if not ids:
            return
        async with self._store.transaction() as db:
            await db.executemany("DELETE FROM pending_writes WHERE local_id = ?", ids)

    async def record_attempt(self, local_ids: Iterable[int]) -> None:
        ids = [(int(local_id),) for local_id in local_ids]
        if not ids:
            return
        async with self._store.transaction() as db:
            await db.executemany("UPDATE pending_writes SET attempts = attempts + 1 WHERE local_id = ?", ids)

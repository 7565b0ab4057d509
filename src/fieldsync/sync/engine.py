"""Replay of the pending-write queue against the remote store."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from fieldsync._constants import LAST_SYNCED_AT_FIELD, MAX_BATCH_SIZE, REMOTE_BATCH_LIMIT
from fieldsync._transport import RemoteStore, RemoteWrite
from fieldsync.exceptions import RemoteStoreError
from fieldsync.models.sync import PendingWriteEntry, SyncProgress, SyncReport
from fieldsync.storage.pending import PendingWriteQueue

_logger = logging.getLogger(__name__)


def _always_online() -> bool:
    return True


def partition(entries: list[PendingWriteEntry], size: int) -> list[list[PendingWriteEntry]]:
    return [entries[start : start + size] for start in range(0, len(entries), size)]


class SyncEngine:
    """Drains :class:`PendingWriteQueue` in bounded atomic batches.

    Only one replay pass runs at a time. Triggers that arrive while a pass
    is in flight (timer and reconnect firing together, a manual retry)
    return immediately with ``skipped=True``.
    """

    def __init__(
        self,
        queue: PendingWriteQueue,
        remote: RemoteStore,
        *,
        max_batch_size: int = MAX_BATCH_SIZE,
        is_online: Callable[[], bool] = _always_online,
        clock: Callable[[], float] = time.time,
        on_progress: Callable[[SyncProgress], None] | None = None,
    ) -> None:
        if not 1 <= max_batch_size <= REMOTE_BATCH_LIMIT:
            raise ValueError(f"max_batch_size must be between 1 and {REMOTE_BATCH_LIMIT}, got {max_batch_size}")
        self._queue = queue
        self._remote = remote
        self._max_batch_size = max_batch_size
        self._is_online = is_online
        self._clock = clock
        self._on_progress = on_progress
        self._running = False
        self._last_report: SyncReport | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_report(self) -> SyncReport | None:
        return self._last_report

    def _notify(self, progress: SyncProgress) -> None:
        if self._on_progress is None:
            return
        try:
            self._on_progress(progress)
        except Exception:
            _logger.debug("on_progress callback failed", exc_info=True)

    def _to_writes(self, batch: list[PendingWriteEntry]) -> list[RemoteWrite]:
        synced_at = self._clock()
        return [
            RemoteWrite(
                collection=entry.target_collection,
                doc_id=entry.entity_id,
                payload={**entry.payload, LAST_SYNCED_AT_FIELD: synced_at},
            )
            for entry in batch
        ]

    async def attempt_replay(self) -> SyncReport:
        """Run one replay pass.

        Each batch is committed atomically and its entries are removed only
        after the commit is acknowledged. The first failing batch ends the
        pass with the queue untouched from that batch on.
        """
        if not self._is_online():
            return SyncReport(skipped=True, reason="offline")
        # Check-and-set happens without an await in between, so it is atomic
        # on the event loop.
        if self._running:
            return SyncReport(skipped=True, reason="busy")
        self._running = True
        try:
            report = await self._replay()
        finally:
            self._running = False
        self._last_report = report
        return report

    async def _replay(self) -> SyncReport:
        pending = await self._queue.list_all()
        if not pending:
            return SyncReport()

        batches = partition(pending, self._max_batch_size)
        _logger.debug("Replaying %d pending writes in %d batches", len(pending), len(batches))

        uploaded = 0
        for index, batch in enumerate(batches):
            ids = [entry.local_id for entry in batch]
            try:
                await self._remote.commit_batch(self._to_writes(batch))
            except RemoteStoreError as exc:
                remaining = len(pending) - uploaded
                if exc.kind == "quota":
                    _logger.warning(
                        "Remote quota exhausted after %d uploads; halting replay with %d queued",
                        uploaded,
                        remaining,
                    )
                    return SyncReport(
                        uploaded=uploaded,
                        remaining=remaining,
                        batches=index + 1,
                        stopped=True,
                        reason="quota",
                        error=str(exc),
                    )
                if exc.kind == "other":
                    # Delivered but rejected by the remote store.
                    await self._queue.record_attempt(ids)
                _logger.info("Replay batch %d failed (%s): %s", index + 1, exc.kind, exc)
                return SyncReport(
                    uploaded=uploaded,
                    remaining=remaining,
                    batches=index + 1,
                    reason=exc.kind,
                    error=str(exc),
                )

            await self._queue.remove_many(ids)
            uploaded += len(batch)
            self._notify(SyncProgress(uploaded=uploaded, remaining=len(pending) - uploaded))

        remaining = await self._queue.count()
        _logger.info("Replay uploaded %d writes, %d remaining", uploaded, remaining)
        return SyncReport(uploaded=uploaded, remaining=remaining, batches=len(batches))

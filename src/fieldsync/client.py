"""High-level async client tying the local store, queue and replay together."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any

import aiohttp
from pydantic.alias_generators import to_camel

from fieldsync._constants import FIELD_UPDATED_AT_FIELD, TABLE_BASE, TABLE_DYNAMIC, TABLE_SURVEY, UPDATED_AT_FIELD
from fieldsync._transport import HttpRemoteStore, RemoteStore
from fieldsync.config import FieldSyncConfig
from fieldsync.exceptions import FieldSyncConfigError, FieldSyncError, RemoteStoreError
from fieldsync.ingestion.importer import fetch_source
from fieldsync.ingestion.importer import import_base as _import_base
from fieldsync.ingestion.normalize import normalize_key, normalize_timestamp_seconds
from fieldsync.models.records import DynamicOverlay, Layer, MergedView, SurveyOverlay
from fieldsync.models.sync import ImportResult, PendingWriteEntry, SyncProgress, SyncReport, WriteResult
from fieldsync.state.merge import apply_dynamic_patch, merge_all, merge_view, patch_dynamic_fields
from fieldsync.state.policy import should_accept_field
from fieldsync.storage.local import LocalStore
from fieldsync.storage.pending import PendingWriteQueue
from fieldsync.sync.engine import SyncEngine
from fieldsync.sync.scheduler import Connectivity, SyncScheduler

_logger = logging.getLogger(__name__)


class FieldSyncClient:
    """Offline-first client for the layered voter dataset.

    Every write lands in the local store first, is then attempted against
    the remote store directly and, when that fails or the device is
    offline, is queued for replay.

    Usage::

        async with FieldSyncClient(FieldSyncConfig.from_env()) as client:
            await client.import_base()
            await client.save_survey("AB123", {"supportStatus": "supporter"})
            view = await client.merge_view("ab123")
    """

    def __init__(
        self,
        config: FieldSyncConfig,
        *,
        remote: RemoteStore | None = None,
        session: aiohttp.ClientSession | None = None,
        online: bool = True,
        clock: Callable[[], float] = time.time,
        on_progress: Callable[[SyncProgress], None] | None = None,
        on_report: Callable[[SyncReport], None] | None = None,
    ) -> None:
        self._config = config
        self._remote = remote
        self._external_session = session is not None
        self._http_session = session
        self._clock = clock
        self._on_progress = on_progress
        self._on_report = on_report
        self._connectivity = Connectivity(online)
        self._store: LocalStore | None = None
        self._queue: PendingWriteQueue | None = None
        self._engine: SyncEngine | None = None
        self._scheduler: SyncScheduler | None = None
        self._background: set[asyncio.Task[WriteResult]] = set()
        self._pending_layers: dict[str, Layer] = {
            config.survey_collection: Layer.SURVEY,
            config.dynamic_collection: Layer.DYNAMIC,
        }

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> FieldSyncClient:
        if self._remote is None:
            if not self._config.remote_base_url:
                raise FieldSyncConfigError("remote_base_url is required when no remote store is injected")
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            self._remote = HttpRemoteStore(
                self._config.remote_base_url,
                self._http_session,
                api_key=self._config.api_key,
                timeout=self._config.request_timeout,
            )

        self._store = LocalStore(self._config.database_path, chunk_size=self._config.import_chunk_size)
        await self._store.open()
        self._queue = PendingWriteQueue(self._store, clock=self._clock)
        await self._queue.initialize()
        self._engine = SyncEngine(
            self._queue,
            self._remote,
            max_batch_size=self._config.max_batch_size,
            is_online=lambda: self._connectivity.is_online,
            clock=self._clock,
            on_progress=self._on_progress,
        )
        if self._config.auto_sync:
            self._scheduler = SyncScheduler(
                self._engine,
                self._connectivity,
                interval=self._config.sync_interval,
                on_report=self._on_report,
            )
            self._scheduler.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if self._scheduler is not None:
            await self._scheduler.stop()
            self._scheduler = None
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        if self._store is not None:
            await self._store.close()
            self._store = None
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self._queue = None
        self._engine = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_store(self) -> LocalStore:
        if self._store is None:
            raise FieldSyncError("Client not initialized. Use 'async with FieldSyncClient(...) as client:'")
        return self._store

    def _require_queue(self) -> PendingWriteQueue:
        self._require_store()
        assert self._queue is not None  # noqa: S101
        return self._queue

    def _require_engine(self) -> SyncEngine:
        self._require_store()
        assert self._engine is not None  # noqa: S101
        return self._engine

    def _require_remote(self) -> RemoteStore:
        if self._remote is None:
            raise FieldSyncError("Client not initialized. Use 'async with FieldSyncClient(...) as client:'")
        return self._remote

    async def _deliver(self, collection: str, key: str, payload: Mapping[str, Any]) -> WriteResult:
        """Try the direct remote write; queue the payload when it does not go through.

        Writes for an entity that already has queued entries go straight to
        the queue so they cannot overtake older unsent versions.
        """
        queue = self._require_queue()
        if self._connectivity.is_online and not await queue.for_entity(collection, key):
            try:
                await asyncio.wait_for(
                    self._require_remote().set_document(collection, key, payload),
                    self._config.direct_write_timeout,
                )
            except (RemoteStoreError, TimeoutError) as exc:
                _logger.info("Direct write of %s/%s failed, queueing: %r", collection, key, exc)
            else:
                return WriteResult(entity_id=key, collection=collection, delivered=True)
        local_id = await queue.enqueue(collection, key, payload)
        return WriteResult(entity_id=key, collection=collection, queued_id=local_id)

    async def _dispatch(
        self,
        collection: str,
        key: str,
        payload: Mapping[str, Any],
        wait_remote: bool,
    ) -> WriteResult:
        if wait_remote:
            return await self._deliver(collection, key, payload)
        task = asyncio.get_running_loop().create_task(self._deliver(collection, key, payload))
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return WriteResult(entity_id=key, collection=collection)

    def _background_done(self, task: asyncio.Task[WriteResult]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _logger.warning("Background write failed", exc_info=exc)

    async def _pending_for(self, key: str) -> list[PendingWriteEntry]:
        queue = self._require_queue()
        entries: list[PendingWriteEntry] = []
        for collection in self._pending_layers:
            entries.extend(await queue.for_entity(collection, key))
        return entries

    # ------------------------------------------------------------------
    # Bulk import
    # ------------------------------------------------------------------

    async def import_base(
        self,
        rows: Iterable[Mapping[str, Any]] | None = None,
        *,
        force: bool = False,
        cancel: asyncio.Event | None = None,
    ) -> ImportResult:
        """Import the base layer from *rows* or from ``bulk_source_url``."""
        store = self._require_store()
        if rows is None:
            if not self._config.bulk_source_url:
                raise FieldSyncConfigError("bulk_source_url is not configured and no rows were given")
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            rows = await fetch_source(self._http_session, self._config.bulk_source_url)
        return await _import_base(store, rows, force=force, cancel=cancel)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def save_survey(
        self,
        raw_id: Any,
        fields: Mapping[str, Any],
        *,
        wait_remote: bool = True,
    ) -> WriteResult:
        """Replace the survey overlay of one entity."""
        store = self._require_store()
        overlay = SurveyOverlay(entity_id=raw_id, fields=fields, updated_at=self._clock())
        await store.put(TABLE_SURVEY, overlay)
        return await self._dispatch(self._config.survey_collection, overlay.entity_id, overlay.to_payload(), wait_remote)

    async def update_dynamic(
        self,
        raw_id: Any,
        fields: Mapping[str, Any],
        *,
        updated_at: float | None = None,
        wait_remote: bool = True,
    ) -> WriteResult:
        """Patch individual dynamic fields, rejecting values older than the cached ones."""
        store = self._require_store()
        key = normalize_key(raw_id)
        stamp = normalize_timestamp_seconds(updated_at)
        if stamp is None:
            stamp = self._clock()
        existing = await store.get(TABLE_DYNAMIC, key)
        patched, accepted = patch_dynamic_fields(existing, key, fields, stamp)  # type: ignore[arg-type]
        if not accepted:
            _logger.debug("Dynamic update for %s carried only stale fields", key)
            return WriteResult(entity_id=key, collection=self._config.dynamic_collection)

        await store.put(TABLE_DYNAMIC, patched)
        payload: dict[str, Any] = {to_camel(name): patched.fields[name] for name in accepted}
        payload["voterId"] = key
        payload[UPDATED_AT_FIELD] = stamp
        payload[FIELD_UPDATED_AT_FIELD] = {to_camel(name): patched.timestamp_for(name) for name in accepted}
        return await self._dispatch(self._config.dynamic_collection, key, payload, wait_remote)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def merge_view(self, raw_id: Any) -> MergedView | None:
        store = self._require_store()
        key = normalize_key(raw_id)
        return merge_view(
            key,
            await store.get(TABLE_BASE, key),  # type: ignore[arg-type]
            await store.get(TABLE_SURVEY, key),  # type: ignore[arg-type]
            await store.get(TABLE_DYNAMIC, key),  # type: ignore[arg-type]
            await self._pending_for(key),
            pending_layers=self._pending_layers,
        )

    async def merge_all(self) -> list[MergedView]:
        store = self._require_store()
        return merge_all(
            await store.all(TABLE_BASE),  # type: ignore[arg-type]
            await store.all(TABLE_SURVEY),  # type: ignore[arg-type]
            await store.all(TABLE_DYNAMIC),  # type: ignore[arg-type]
            await self._require_queue().list_all(),
            pending_layers=self._pending_layers,
        )

    async def scan(self, index: str, value: Any) -> list[MergedView]:
        """Merged views of the base records whose *index* attribute equals *value*."""
        store = self._require_store()
        views: list[MergedView] = []
        for record in await store.scan_by_index(TABLE_BASE, index, value):
            view = await self.merge_view(record.entity_id)
            if view is not None:
                views.append(view)
        return views

    async def touched_entities(self) -> list[MergedView]:
        """Views of every entity with an overlay or a pending write, with or without a base record."""
        store = self._require_store()
        keys = set(await store.keys(TABLE_SURVEY)) | set(await store.keys(TABLE_DYNAMIC))
        keys.update(entry.entity_id for entry in await self._require_queue().list_all())
        views: list[MergedView] = []
        for key in sorted(keys):
            view = await self.merge_view(key)
            if view is not None:
                views.append(view)
        return views

    # ------------------------------------------------------------------
    # Remote refresh
    # ------------------------------------------------------------------

    async def refresh_overlays(self) -> int:
        """Pull both overlay collections into the local store.

        Entities with queued writes for a collection are left alone there,
        since the local copy is newer than anything the remote holds.
        Returns the number of overlay documents stored.
        """
        store = self._require_store()
        remote = self._require_remote()
        pending = await self._require_queue().list_all()
        stored = 0

        for collection, table in (
            (self._config.survey_collection, TABLE_SURVEY),
            (self._config.dynamic_collection, TABLE_DYNAMIC),
        ):
            try:
                documents = await remote.fetch_collection(collection)
            except RemoteStoreError as exc:
                _logger.warning("Could not refresh %s: %s", collection, exc)
                continue
            skip = {entry.entity_id for entry in pending if entry.target_collection == collection}
            updates: dict[str, SurveyOverlay | DynamicOverlay] = {}
            for doc_id, data in documents:
                if table == TABLE_SURVEY:
                    incoming: SurveyOverlay | DynamicOverlay = SurveyOverlay.from_document(doc_id, data)
                else:
                    incoming = DynamicOverlay.from_document(doc_id, data)
                key = incoming.entity_id
                if key in skip:
                    continue
                current = updates.get(key) or await store.get(table, key)
                if isinstance(incoming, DynamicOverlay):
                    incoming = apply_dynamic_patch(
                        current,  # type: ignore[arg-type]
                        key,
                        incoming.fields,
                        incoming.updated_at,
                        field_updated_at=incoming.field_updated_at,
                    )
                elif current is not None and not should_accept_field(
                    cached_ts=current.updated_at, incoming_ts=incoming.updated_at
                ):
                    continue
                updates[key] = incoming
            stored += await store.bulk_put(table, updates.values())
            _logger.debug("Refreshed %d documents from %s", len(updates), collection)
        return stored

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync_now(self) -> SyncReport:
        return await self._require_engine().attempt_replay()

    def set_online(self, online: bool) -> None:
        self._connectivity.set_online(online)

    @property
    def is_online(self) -> bool:
        return self._connectivity.is_online

    async def pending_count(self) -> int:
        return await self._require_queue().count()

    async def wait_background_writes(self) -> None:
        """Wait for writes started with ``wait_remote=False`` to settle.

        Failures are logged at WARNING as each write finishes.
        """
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

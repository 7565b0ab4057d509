"""One-shot bulk import of the base layer."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections.abc import Iterable, Mapping
from typing import Any

import aiohttp

from fieldsync._constants import IMPORT_MARKER_KEY, TABLE_BASE
from fieldsync.exceptions import ImportSourceError, StorageQuotaExceededError
from fieldsync.models.records import BaseRecord
from fieldsync.models.sync import ImportResult
from fieldsync.storage.local import LocalStore

_logger = logging.getLogger(__name__)


def _source_rows(decoded: Any) -> list[dict[str, Any]]:
    if isinstance(decoded, dict):
        decoded = decoded.get("voters")
    if not isinstance(decoded, list):
        raise ImportSourceError("Bulk source must be a JSON array or an object with a 'voters' array")
    return [row for row in decoded if isinstance(row, dict)]


async def fetch_source(
    session: aiohttp.ClientSession,
    url: str,
    *,
    timeout: float = 60.0,
) -> list[dict[str, Any]]:
    """Download the static bulk document and return its rows."""
    try:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            text = await resp.text()
            if resp.status >= 400:
                raise ImportSourceError(f"HTTP {resp.status} fetching bulk source {url}")
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise ImportSourceError(f"Could not fetch bulk source {url}: {exc!r}") from exc

    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ImportSourceError(f"Bulk source {url} is not valid JSON") from exc
    rows = _source_rows(decoded)
    _logger.info("Fetched %d bulk rows from %s", len(rows), url)
    return rows


def build_records(
    rows: Iterable[Mapping[str, Any]],
    seen: set[str] | None = None,
) -> tuple[list[BaseRecord], list[str]]:
    """Normalize source rows into base records.

    Rows whose identifiers collapse to the same canonical key are reduced to
    the last one; the colliding keys are returned alongside. Pass the same
    *seen* set for consecutive slices of one source so a key repeated
    across slices is reported as well.
    """
    if seen is None:
        seen = set()
    by_key: dict[str, BaseRecord] = {}
    collisions: list[str] = []
    for row in rows:
        record = BaseRecord.from_source(row)
        if record.entity_id in seen and record.entity_id not in collisions:
            collisions.append(record.entity_id)
        seen.add(record.entity_id)
        by_key[record.entity_id] = record
    return list(by_key.values()), collisions


async def import_base(
    store: LocalStore,
    rows: Iterable[Mapping[str, Any]],
    *,
    force: bool = False,
    cancel: asyncio.Event | None = None,
) -> ImportResult:
    """Load the base layer into *store*.

    Skipped when a previous import completed and the base table still holds
    data, unless *force* is set. Rows are normalized and written one slice
    of ``store.chunk_size`` at a time, yielding to the event loop between
    slices; *cancel* is checked before each slice. Writes are idempotent
    upserts and a later row replaces an earlier one with the same key, so
    an import interrupted by a full disk or cancellation can simply be run
    again.
    """
    if not force and await store.get_meta(IMPORT_MARKER_KEY) and await store.count(TABLE_BASE) > 0:
        _logger.debug("Base layer already imported; skipping")
        return ImportResult(skipped=True)

    pending = iter(rows)
    seen: set[str] = set()
    written: set[str] = set()
    collisions: list[str] = []
    while True:
        if cancel is not None and cancel.is_set():
            _logger.info("Base import cancelled after %d records", len(written))
            return ImportResult(imported=len(written), cancelled=True, collisions=collisions)
        batch = list(itertools.islice(pending, store.chunk_size))
        if not batch:
            break
        records, clashes = build_records(batch, seen)
        collisions.extend(key for key in clashes if key not in collisions)
        try:
            await store.bulk_put(TABLE_BASE, records)
        except StorageQuotaExceededError:
            _logger.warning("Local store full after %d base records", len(written))
            return ImportResult(imported=len(written), error="storage_quota", collisions=collisions)
        written.update(record.entity_id for record in records)
        await asyncio.sleep(0)

    if collisions:
        _logger.warning(
            "%d source identifiers collide after normalization: %s",
            len(collisions),
            ", ".join(collisions[:10]),
        )
    await store.set_meta(IMPORT_MARKER_KEY, str(len(written)))
    _logger.info("Imported %d base records", len(written))
    return ImportResult(imported=len(written), collisions=collisions)

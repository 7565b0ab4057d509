from __future__ import annotations

import asyncio
import time
from collections.abc import Iterator
from pathlib import Path

import aiohttp
import pytest
from aiohttp import test_utils, web

from fieldsync.exceptions import ImportSourceError
from fieldsync.ingestion.importer import build_records, fetch_source, import_base
from fieldsync.storage.local import LocalStore

_ROWS = [
    {"voterId": "mh001", "name": "Shinde Asha", "booth": "1"},
    {"voterId": "MH002", "name": "More Vijay", "booth": "1"},
    {"voterId": "mh003", "name": "Gaikwad Ravi", "booth": "2"},
]


async def _serve(handler: object) -> test_utils.TestServer:
    app = web.Application()
    app.router.add_get("/voters.json", handler)  # type: ignore[arg-type]
    server = test_utils.TestServer(app)
    await server.start_server()
    return server


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [_ROWS, {"voters": _ROWS}])
async def test_fetch_source_accepts_array_or_wrapped_document(body: object) -> None:
    async def _handler(_request: web.Request) -> web.Response:
        return web.json_response(body)

    server = await _serve(_handler)
    try:
        async with aiohttp.ClientSession() as session:
            rows = await fetch_source(session, str(server.make_url("/voters.json")))
    finally:
        await server.close()

    assert rows == _ROWS


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        web.Response(status=404, text="missing"),
        web.Response(text="not json"),
        web.json_response({"records": []}),
    ],
)
async def test_fetch_source_errors(response: web.Response) -> None:
    async def _handler(_request: web.Request) -> web.Response:
        return response

    server = await _serve(_handler)
    try:
        async with aiohttp.ClientSession() as session:
            with pytest.raises(ImportSourceError):
                await fetch_source(session, str(server.make_url("/voters.json")))
    finally:
        await server.close()


def test_build_records_reports_collapsed_identifiers() -> None:
    records, collisions = build_records(
        [
            {"voterId": " ab123 ", "name": "First"},
            {"voterId": "AB123", "name": "Second"},
            {"voterId": "ab123", "name": "Third"},
            {"voterId": "cd456", "name": "Other"},
        ]
    )

    assert collisions == ["AB123"]
    assert [(record.entity_id, record.name) for record in records] == [("AB123", "Third"), ("CD456", "Other")]


@pytest.mark.asyncio
async def test_import_is_skipped_once_completed(tmp_path: Path) -> None:
    async with LocalStore(str(tmp_path / "i.db")) as store:
        first = await import_base(store, _ROWS)
        second = await import_base(store, _ROWS[:1])
        forced = await import_base(store, _ROWS[:1], force=True)
        count = await store.count("base")

    assert (first.imported, first.skipped) == (3, False)
    assert second.skipped is True
    assert forced.imported == 1
    assert count == 3


@pytest.mark.asyncio
async def test_import_runs_again_when_base_was_wiped(tmp_path: Path) -> None:
    async with LocalStore(str(tmp_path / "i.db")) as store:
        await import_base(store, _ROWS)
        await store.clear("base")
        again = await import_base(store, _ROWS)

    assert again.skipped is False
    assert again.imported == 3


@pytest.mark.asyncio
async def test_cancelled_import_can_be_resumed(tmp_path: Path) -> None:
    cancel = asyncio.Event()
    cancel.set()
    async with LocalStore(str(tmp_path / "i.db"), chunk_size=1) as store:
        cancelled = await import_base(store, _ROWS, cancel=cancel)
        marker = await store.get_meta("base_import")
        resumed = await import_base(store, _ROWS)

    assert cancelled.cancelled is True
    assert cancelled.imported == 0
    assert marker is None
    assert resumed.imported == 3


@pytest.mark.asyncio
async def test_full_disk_returns_storage_quota_without_marker(tmp_path: Path) -> None:
    async with LocalStore(str(tmp_path / "i.db")) as store:
        async with store.db.execute("PRAGMA page_count") as cursor:
            row = await cursor.fetchone()
        await store.db.execute(f"PRAGMA max_page_count = {row[0]}")

        rows = [{"voterId": f"x{index}", "name": "y" * 50_000} for index in range(2)]
        result = await import_base(store, rows)
        marker = await store.get_meta("base_import")

    assert result.error == "storage_quota"
    assert result.imported == 0
    assert marker is None


class _CancelAfterChecks(asyncio.Event):
    """Reports cancellation once *checks* slice boundaries have passed."""

    def __init__(self, checks: int) -> None:
        super().__init__()
        self._left = checks

    def is_set(self) -> bool:
        self._left -= 1
        return self._left < 0


@pytest.mark.asyncio
async def test_cancel_stops_import_between_slices(tmp_path: Path) -> None:
    pulled: list[str] = []

    def _stream() -> Iterator[dict[str, str]]:
        for row in _ROWS:
            pulled.append(row["voterId"])
            yield row

    async with LocalStore(str(tmp_path / "i.db"), chunk_size=1) as store:
        result = await import_base(store, _stream(), cancel=_CancelAfterChecks(2))
        keys = await store.keys("base")
        marker = await store.get_meta("base_import")

    assert result.cancelled is True
    assert result.imported == 2
    assert pulled == ["mh001", "MH002"]
    assert keys == ["MH001", "MH002"]
    assert marker is None


@pytest.mark.asyncio
async def test_collisions_are_detected_across_slices(tmp_path: Path) -> None:
    rows = [
        {"voterId": " ab123 ", "name": "First"},
        {"voterId": "cd456", "name": "Other"},
        {"voterId": "AB123", "name": "Third"},
    ]
    async with LocalStore(str(tmp_path / "i.db"), chunk_size=2) as store:
        result = await import_base(store, rows)
        stored = await store.get("base", "ab123")
        count = await store.count("base")

    assert result.collisions == ["AB123"]
    assert result.imported == 2
    assert count == 2
    assert stored is not None
    assert stored.name == "Third"  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_large_import_keeps_event_loop_responsive(tmp_path: Path) -> None:
    rows = [{"voterId": f"bulk{index:05d}", "name": f"Voter {index}", "booth": str(index % 40)} for index in range(20_000)]
    longest = 0.0
    ticks = 0
    done = asyncio.Event()

    async def _ticker() -> None:
        nonlocal longest, ticks
        last = time.perf_counter()
        while not done.is_set():
            await asyncio.sleep(0)
            now = time.perf_counter()
            longest = max(longest, now - last)
            ticks += 1
            last = now

    ticker = asyncio.create_task(_ticker())
    try:
        async with LocalStore(str(tmp_path / "i.db"), chunk_size=250) as store:
            result = await import_base(store, rows)
    finally:
        done.set()
        await ticker

    assert result.imported == 20_000
    assert ticks > 20_000 // 250
    assert longest < 0.3

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import pytest

from fieldsync import FieldSyncClient, FieldSyncConfig
from fieldsync._transport import RemoteWrite
from fieldsync.exceptions import FieldSyncConfigError, FieldSyncError, RemoteUnavailableError


class _FakeRemote:
    def __init__(self) -> None:
        self.documents: dict[tuple[str, str], dict[str, Any]] = {}
        self.direct_writes: list[tuple[str, str, dict[str, Any]]] = []
        self.batches: list[list[RemoteWrite]] = []
        self.collections: dict[str, list[tuple[str, dict[str, Any]]]] = {}
        self.fail_direct: Exception | None = None
        self.direct_delay = 0.0

    async def commit_batch(self, writes: Sequence[RemoteWrite]) -> None:
        self.batches.append(list(writes))
        for write in writes:
            self.documents.setdefault((write.collection, write.doc_id), {}).update(write.payload)

    async def set_document(self, collection: str, doc_id: str, payload: Mapping[str, Any]) -> None:
        if self.direct_delay:
            await asyncio.sleep(self.direct_delay)
        if self.fail_direct is not None:
            raise self.fail_direct
        self.direct_writes.append((collection, doc_id, dict(payload)))
        self.documents.setdefault((collection, doc_id), {}).update(payload)

    async def fetch_collection(self, collection: str) -> list[tuple[str, dict[str, Any]]]:
        if collection not in self.collections:
            raise RemoteUnavailableError("offline", collection=collection)
        return self.collections[collection]


def _config(tmp_path: Path, **overrides: Any) -> FieldSyncConfig:
    return FieldSyncConfig(database_path=str(tmp_path / "client.db"), auto_sync=False, **overrides)


_ROWS = [
    {"voterId": "mh001", "name": "Shinde Asha", "booth": "1"},
    {"voterId": "mh002", "name": "More Vijay", "booth": "2"},
]


@pytest.mark.asyncio
async def test_survey_save_is_delivered_directly(tmp_path: Path) -> None:
    remote = _FakeRemote()
    async with FieldSyncClient(_config(tmp_path), remote=remote, clock=lambda: 100.0) as client:
        await client.import_base(_ROWS)
        result = await client.save_survey(" mh001 ", {"supportStatus": "Supporter", "caste": "X"})
        view = await client.merge_view("MH001")
        pending = await client.pending_count()

    assert result.delivered is True
    assert result.queued_id is None
    assert pending == 0
    assert remote.direct_writes == [
        ("voter_surveys", "MH001", {"supportStatus": "Supporter", "caste": "X", "voterId": "MH001", "updatedAt": 100.0})
    ]
    assert view is not None
    assert view.get("support_status") == "supporter"
    assert view.get("name") == "Shinde Asha"


@pytest.mark.asyncio
async def test_failed_direct_write_is_queued_and_visible_locally(tmp_path: Path) -> None:
    remote = _FakeRemote()
    remote.fail_direct = RemoteUnavailableError("connection reset")
    async with FieldSyncClient(_config(tmp_path), remote=remote) as client:
        await client.import_base(_ROWS)
        result = await client.save_survey("mh002", {"supportStatus": "Opposed"})
        view = await client.merge_view("mh002")
        pending = await client.pending_count()

    assert result.delivered is False
    assert result.queued_id is not None
    assert pending == 1
    assert view is not None
    assert view.get("support_status") == "opposed"


@pytest.mark.asyncio
async def test_slow_direct_write_falls_back_to_queue(tmp_path: Path) -> None:
    remote = _FakeRemote()
    remote.direct_delay = 5.0
    async with FieldSyncClient(_config(tmp_path, direct_write_timeout=0.05), remote=remote) as client:
        result = await client.update_dynamic("mh001", {"hasVoted": True})
        pending = await client.pending_count()

    assert result.queued_id is not None
    assert pending == 1


@pytest.mark.asyncio
async def test_offline_writes_replay_after_reconnect(tmp_path: Path) -> None:
    remote = _FakeRemote()
    async with FieldSyncClient(_config(tmp_path), remote=remote, online=False, clock=lambda: 50.0) as client:
        await client.save_survey("mh001", {"supportStatus": "Neutral"})
        await client.update_dynamic("mh001", {"hasVoted": True})
        skipped = await client.sync_now()

        client.set_online(True)
        report = await client.sync_now()
        pending = await client.pending_count()

    assert skipped.skipped is True
    assert remote.direct_writes == []
    assert report.uploaded == 2
    assert pending == 0
    survey = remote.documents[("voter_surveys", "MH001")]
    assert survey["supportStatus"] == "Neutral"
    assert survey["lastSyncedAt"] == 50.0
    dynamic = remote.documents[("voters_dynamic", "MH001")]
    assert dynamic["hasVoted"] is True
    assert dynamic["fieldUpdatedAt"] == {"hasVoted": 50.0}


@pytest.mark.asyncio
async def test_writes_behind_queued_entries_are_queued_too(tmp_path: Path) -> None:
    remote = _FakeRemote()
    remote.fail_direct = RemoteUnavailableError("down")
    async with FieldSyncClient(_config(tmp_path), remote=remote) as client:
        await client.save_survey("mh001", {"supportStatus": "Neutral"})
        remote.fail_direct = None
        second = await client.save_survey("mh001", {"supportStatus": "Supporter"})
        pending = await client.pending_count()

    assert second.queued_id is not None
    assert remote.direct_writes == []
    assert pending == 2


@pytest.mark.asyncio
async def test_stale_dynamic_update_is_ignored(tmp_path: Path) -> None:
    remote = _FakeRemote()
    async with FieldSyncClient(_config(tmp_path), remote=remote, online=False) as client:
        await client.update_dynamic("mh001", {"status": "voted"}, updated_at=100)
        stale = await client.update_dynamic("mh001", {"status": "not-voted"}, updated_at=50)
        view = await client.merge_view("mh001")
        pending = await client.pending_count()

    assert stale.delivered is False
    assert stale.queued_id is None
    assert pending == 1
    assert view is not None
    assert view.get("status") == "voted"


@pytest.mark.asyncio
async def test_background_write_completes_before_close(tmp_path: Path) -> None:
    remote = _FakeRemote()
    async with FieldSyncClient(_config(tmp_path), remote=remote) as client:
        result = await client.save_survey("mh001", {"supportStatus": "Neutral"}, wait_remote=False)
        await client.wait_background_writes()

    assert result.delivered is False
    assert [doc_id for _, doc_id, _ in remote.direct_writes] == ["MH001"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("updated_at", "seconds"),
    [(1_700_000_000_000, 1_700_000_000.0), (1_700_000_000, 1_700_000_000.0), (0, 0.0)],
)
async def test_dynamic_update_normalizes_caller_timestamp(tmp_path: Path, updated_at: float, seconds: float) -> None:
    remote = _FakeRemote()
    async with FieldSyncClient(_config(tmp_path), remote=remote, clock=lambda: 99.0) as client:
        result = await client.update_dynamic("mh001", {"hasVoted": True}, updated_at=updated_at)
        view = await client.merge_view("mh001")

    assert result.delivered is True
    assert remote.direct_writes == [
        (
            "voters_dynamic",
            "MH001",
            {"hasVoted": True, "voterId": "MH001", "updatedAt": seconds, "fieldUpdatedAt": {"hasVoted": seconds}},
        )
    ]
    assert view is not None
    assert view.get("has_voted") is True


@pytest.mark.asyncio
async def test_millisecond_and_second_timestamps_compare_on_one_scale(tmp_path: Path) -> None:
    async with FieldSyncClient(_config(tmp_path), remote=_FakeRemote(), online=False) as client:
        first = await client.update_dynamic("mh001", {"status": "voted"}, updated_at=1_700_000_000_000)
        older = await client.update_dynamic("mh001", {"status": "not-voted"}, updated_at=1_600_000_000)
        newer = await client.update_dynamic("mh001", {"status": "left"}, updated_at=1_700_000_001)
        view = await client.merge_view("mh001")
        pending = await client.pending_count()

    assert first.queued_id is not None
    assert older.queued_id is None
    assert newer.queued_id is not None
    assert pending == 2
    assert view is not None
    assert view.get("status") == "left"


@pytest.mark.asyncio
async def test_background_write_failure_is_logged(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    remote = _FakeRemote()
    remote.fail_direct = RuntimeError("socket exploded")
    with caplog.at_level(logging.WARNING, logger="fieldsync.client"):
        async with FieldSyncClient(_config(tmp_path), remote=remote) as client:
            result = await client.save_survey("mh001", {"supportStatus": "Neutral"}, wait_remote=False)
            await client.wait_background_writes()

    assert result.delivered is False
    failures = [record for record in caplog.records if record.getMessage() == "Background write failed"]
    assert len(failures) == 1
    assert failures[0].levelno == logging.WARNING
    assert isinstance(failures[0].exc_info[1], RuntimeError)  # type: ignore[index]


@pytest.mark.asyncio
async def test_background_write_failure_is_logged_on_close(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    remote = _FakeRemote()
    remote.fail_direct = RuntimeError("socket exploded")
    remote.direct_delay = 0.01
    with caplog.at_level(logging.WARNING, logger="fieldsync.client"):
        async with FieldSyncClient(_config(tmp_path), remote=remote) as client:
            await client.save_survey("mh001", {"supportStatus": "Neutral"}, wait_remote=False)

    assert [record.getMessage() for record in caplog.records].count("Background write failed") == 1


@pytest.mark.asyncio
async def test_scan_and_merge_all(tmp_path: Path) -> None:
    async with FieldSyncClient(_config(tmp_path), remote=_FakeRemote(), online=False) as client:
        await client.import_base(_ROWS)
        await client.update_dynamic("mh002", {"hasVoted": "yes"})
        booth_two = await client.scan("booth_number", "2")
        everything = await client.merge_all()

    assert [view.entity_id for view in booth_two] == ["MH002"]
    assert booth_two[0].get("has_voted") is True
    assert [view.entity_id for view in everything] == ["MH001", "MH002"]


@pytest.mark.asyncio
async def test_touched_entities_include_overlay_only_records(tmp_path: Path) -> None:
    async with FieldSyncClient(_config(tmp_path), remote=_FakeRemote(), online=False) as client:
        await client.import_base(_ROWS)
        await client.save_survey("new9", {"supportStatus": "Supporter"})
        await client.update_dynamic("mh001", {"hasVoted": True})
        touched = await client.touched_entities()

    assert [(view.entity_id, view.has_base) for view in touched] == [("MH001", True), ("NEW9", False)]


@pytest.mark.asyncio
async def test_refresh_overlays_skips_entities_with_pending_writes(tmp_path: Path) -> None:
    remote = _FakeRemote()
    remote.collections = {
        "voter_surveys": [
            ("MH001", {"voterId": "MH001", "supportStatus": "Remote", "updatedAt": 10}),
            ("MH002", {"voterId": "MH002", "supportStatus": "Remote", "updatedAt": 10}),
        ],
        "voters_dynamic": [
            ("MH002", {"hasVoted": True, "updatedAt": 10, "fieldUpdatedAt": {"hasVoted": 10}}),
        ],
    }
    async with FieldSyncClient(_config(tmp_path), remote=remote, online=False, clock=lambda: 20.0) as client:
        await client.import_base(_ROWS)
        await client.save_survey("mh001", {"supportStatus": "Local"})
        stored = await client.refresh_overlays()
        first = await client.merge_view("mh001")
        second = await client.merge_view("mh002")

    assert stored == 2
    assert first is not None and first.get("support_status") == "local"
    assert second is not None
    assert second.get("support_status") == "remote"
    assert second.get("has_voted") is True


@pytest.mark.asyncio
async def test_refresh_overlays_tolerates_remote_failure(tmp_path: Path) -> None:
    async with FieldSyncClient(_config(tmp_path), remote=_FakeRemote()) as client:
        assert await client.refresh_overlays() == 0


@pytest.mark.asyncio
async def test_client_requires_remote_or_url(tmp_path: Path) -> None:
    with pytest.raises(FieldSyncConfigError):
        async with FieldSyncClient(_config(tmp_path)):
            pass


@pytest.mark.asyncio
async def test_import_without_rows_requires_source_url(tmp_path: Path) -> None:
    async with FieldSyncClient(_config(tmp_path), remote=_FakeRemote()) as client:
        with pytest.raises(FieldSyncConfigError):
            await client.import_base()


@pytest.mark.asyncio
async def test_operations_require_open_client(tmp_path: Path) -> None:
    client = FieldSyncClient(_config(tmp_path), remote=_FakeRemote())
    with pytest.raises(FieldSyncError):
        await client.merge_view("mh001")


@pytest.mark.asyncio
async def test_auto_sync_replays_queue_on_reconnect(tmp_path: Path) -> None:
    remote = _FakeRemote()
    config = FieldSyncConfig(database_path=str(tmp_path / "auto.db"), auto_sync=True, sync_interval=3600)
    async with FieldSyncClient(config, remote=remote, online=False) as client:
        await client.save_survey("mh001", {"supportStatus": "Neutral"})
        client.set_online(True)
        for _ in range(100):
            if await client.pending_count() == 0:
                break
            await asyncio.sleep(0.01)
        pending = await client.pending_count()

    assert pending == 0
    assert ("voter_surveys", "MH001") in remote.documents

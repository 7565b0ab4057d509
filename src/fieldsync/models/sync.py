"""Queue, replay and write-outcome models."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from fieldsync.models._base import FieldSyncModel


class PendingWriteEntry(FieldSyncModel):
    """A write that has not been acknowledged by the remote store yet."""

    local_id: int
    target_collection: str
    entity_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: float
    attempts: int = 0


class SyncProgress(FieldSyncModel):
    """Reported to the progress observer after each committed batch."""

    uploaded: int
    remaining: int


class SyncReport(FieldSyncModel):
    """Outcome of one replay pass.

    ``stopped`` is only set when the quota circuit breaker tripped. Any
    other failure leaves ``stopped`` false and names the error kind in
    ``reason``; in both cases the failed batch stays queued.
    """

    uploaded: int = 0
    remaining: int = 0
    batches: int = 0
    """Commit attempts made, the failed one included."""
    stopped: bool = False
    skipped: bool = False
    reason: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return not self.skipped and self.reason is None


class WriteResult(FieldSyncModel):
    """Outcome of an optimistic local write and its remote follow-up."""

    entity_id: str
    collection: str
    delivered: bool = False
    """Confirmed by the remote store on the direct path."""
    queued_id: int | None = None
    """Pending-queue id when the write was deferred to replay."""


class ImportResult(FieldSyncModel):
    imported: int = 0
    skipped: bool = False
    cancelled: bool = False
    error: str | None = None
    collisions: list[str] = Field(default_factory=list)
    """Canonical keys that more than one source row normalized to; the last row wins."""

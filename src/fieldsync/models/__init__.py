"""Record and sync models."""

from fieldsync.models.records import BaseRecord, DynamicOverlay, Layer, MergedView, SurveyOverlay
from fieldsync.models.sync import ImportResult, PendingWriteEntry, SyncProgress, SyncReport, WriteResult

__all__ = [
    "BaseRecord",
    "DynamicOverlay",
    "ImportResult",
    "Layer",
    "MergedView",
    "PendingWriteEntry",
    "SurveyOverlay",
    "SyncProgress",
    "SyncReport",
    "WriteResult",
]

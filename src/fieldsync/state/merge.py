"""Deterministic layered merge.

Pure functions only: given the same layers they produce the same views,
and they never mutate their inputs.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from fieldsync._constants import DYNAMIC_COLLECTION, FIELD_UPDATED_AT_FIELD, SURVEY_COLLECTION
from fieldsync.ingestion.normalize import (
    clean_phone,
    first_present,
    normalize_gender,
    normalize_key,
    normalize_timestamp_seconds,
    parse_age,
    parse_bool,
    safe_str,
    snake_keys,
    surname_from_name,
)
from fieldsync.models.records import BaseRecord, DynamicOverlay, Layer, MergedView, SurveyOverlay
from fieldsync.models.sync import PendingWriteEntry
from fieldsync.state.policy import overlay_wins, should_accept_field

_logger = logging.getLogger(__name__)

DEFAULT_PENDING_LAYERS: Mapping[str, Layer] = {
    SURVEY_COLLECTION: Layer.SURVEY,
    DYNAMIC_COLLECTION: Layer.DYNAMIC,
}


def patch_dynamic_fields(
    existing: DynamicOverlay | None,
    entity_id: str,
    fields: Mapping[str, Any],
    updated_at: float | None,
    *,
    field_updated_at: Mapping[str, Any] | None = None,
) -> tuple[DynamicOverlay, list[str]]:
    """Patch a dynamic overlay field by field.

    A field is only replaced when the incoming timestamp is not older than
    the one already stored for it. Per-field timestamps in
    *field_updated_at* take precedence over *updated_at*. Returns the
    patched overlay and the names of the fields that were taken.
    """
    incoming = DynamicOverlay(
        entity_id=entity_id,
        fields=fields,
        field_updated_at=field_updated_at or {},
        updated_at=updated_at,
    )
    if existing is None:
        merged_fields: dict[str, Any] = {}
        stamps: dict[str, float] = {}
        doc_ts: float | None = None
    else:
        merged_fields = copy.deepcopy(existing.fields)
        stamps = dict(existing.field_updated_at)
        doc_ts = existing.updated_at

    accepted: list[str] = []
    for name, value in incoming.fields.items():
        incoming_ts = incoming.timestamp_for(name)
        cached_ts = existing.timestamp_for(name) if existing is not None and name in existing.fields else None
        if not should_accept_field(cached_ts=cached_ts, incoming_ts=incoming_ts):
            _logger.debug("Ignoring stale %s for %s (%s < %s)", name, incoming.entity_id, incoming_ts, cached_ts)
            continue
        merged_fields[name] = copy.deepcopy(value)
        if incoming_ts is not None:
            stamps[name] = incoming_ts
        accepted.append(name)

    if incoming.updated_at is not None and (doc_ts is None or incoming.updated_at > doc_ts):
        doc_ts = incoming.updated_at

    patched = DynamicOverlay(
        entity_id=incoming.entity_id,
        fields=merged_fields,
        field_updated_at=stamps,
        updated_at=doc_ts,
    )
    return patched, accepted


def apply_dynamic_patch(
    existing: DynamicOverlay | None,
    entity_id: str,
    fields: Mapping[str, Any],
    updated_at: float | None,
    *,
    field_updated_at: Mapping[str, Any] | None = None,
) -> DynamicOverlay:
    """Like :func:`patch_dynamic_fields` but only returns the overlay."""
    patched, _ = patch_dynamic_fields(existing, entity_id, fields, updated_at, field_updated_at=field_updated_at)
    return patched


def _pending_by_layer(
    pending: Iterable[PendingWriteEntry],
    layers: Mapping[str, Layer],
) -> dict[tuple[Layer, str], list[PendingWriteEntry]]:
    grouped: dict[tuple[Layer, str], list[PendingWriteEntry]] = {}
    for entry in sorted(pending, key=lambda item: (item.created_at, item.local_id)):
        layer = layers.get(entry.target_collection)
        if layer is None:
            continue
        grouped.setdefault((layer, normalize_key(entry.entity_id)), []).append(entry)
    return grouped


def _pending_timestamp(entry: PendingWriteEntry) -> float:
    payload = snake_keys(entry.payload)
    stamp = normalize_timestamp_seconds(first_present(payload, "updated_at", "last_updated"))
    return stamp if stamp is not None else entry.created_at


def _effective_survey(
    entity_id: str,
    survey: SurveyOverlay | None,
    pending: Sequence[PendingWriteEntry],
) -> SurveyOverlay | None:
    """Survey layer with unacknowledged saves laid on top."""
    effective = survey
    for entry in pending:
        candidate = SurveyOverlay.from_document(entity_id, entry.payload)
        candidate = candidate.model_copy(update={"updated_at": _pending_timestamp(entry)})
        if effective is None or should_accept_field(cached_ts=effective.updated_at, incoming_ts=candidate.updated_at):
            effective = candidate
    return effective


def _effective_dynamic(
    entity_id: str,
    dynamic: DynamicOverlay | None,
    pending: Sequence[PendingWriteEntry],
) -> DynamicOverlay | None:
    effective = dynamic
    for entry in pending:
        stamps = entry.payload.get(FIELD_UPDATED_AT_FIELD)
        effective = apply_dynamic_patch(
            effective,
            entity_id,
            entry.payload,
            _pending_timestamp(entry),
            field_updated_at=stamps if isinstance(stamps, Mapping) else None,
        )
    return effective


def _derive(data: dict[str, Any]) -> None:
    """Recompute searchable fields so every layer's encoding agrees."""
    phone = first_present(data, "phone", "whatsapp", "mobile")
    if phone is not None:
        data["phone"] = clean_phone(phone)
    if data.get("whatsapp") is not None:
        data["whatsapp"] = clean_phone(data["whatsapp"])
    if "gender" in data:
        data["gender"] = normalize_gender(data["gender"])
    if "age" in data:
        data["age"] = parse_age(data["age"])
    data["has_voted"] = parse_bool(first_present(data, "has_voted", "voted", "voted_status"))
    data["support_status"] = safe_str(data.get("support_status")).lower() or "unknown"
    if data.get("name") is not None and not data.get("surname"):
        data["surname"] = surname_from_name(data["name"])


def _merge_one(
    entity_id: str,
    base: BaseRecord | None,
    survey: SurveyOverlay | None,
    dynamic: DynamicOverlay | None,
) -> MergedView:
    data: dict[str, Any] = {}
    sources: dict[str, Layer] = {}
    stamps: dict[str, float | None] = {}

    if base is not None:
        for name, value in base.layer_fields().items():
            data[name] = copy.deepcopy(value)
            sources[name] = Layer.BASE
            stamps[name] = None

    layers: list[tuple[Layer, dict[str, Any], Any]] = []
    if survey is not None:
        survey_ts = survey.updated_at
        layers.append((Layer.SURVEY, survey.fields, lambda _name: survey_ts))
    if dynamic is not None:
        layers.append((Layer.DYNAMIC, dynamic.fields, dynamic.timestamp_for))

    for layer, fields, stamp_for in layers:
        for name, value in fields.items():
            incoming_ts = stamp_for(name)
            if name in sources and not overlay_wins(
                current_layer=sources[name],
                current_ts=stamps[name],
                incoming_layer=layer,
                incoming_ts=incoming_ts,
            ):
                continue
            data[name] = copy.deepcopy(value)
            sources[name] = layer
            stamps[name] = incoming_ts

    data["entity_id"] = entity_id
    _derive(data)
    return MergedView(entity_id=entity_id, data=data, sources=sources, has_base=base is not None)


def _latest(records: Iterable[SurveyOverlay | DynamicOverlay]) -> dict[str, Any]:
    """Index overlays by canonical key; on duplicates the newest document wins."""
    indexed: dict[str, Any] = {}
    for record in records:
        key = normalize_key(record.entity_id)
        current = indexed.get(key)
        if current is None or should_accept_field(cached_ts=current.updated_at, incoming_ts=record.updated_at):
            indexed[key] = record
    return indexed


def merge_view(
    entity_id: Any,
    base: BaseRecord | None,
    survey: SurveyOverlay | None,
    dynamic: DynamicOverlay | None,
    pending: Iterable[PendingWriteEntry] = (),
    *,
    pending_layers: Mapping[str, Layer] = DEFAULT_PENDING_LAYERS,
) -> MergedView | None:
    """Merge the layers of a single entity.

    Unlike :func:`merge_all` this does not require a base record, so
    entities that only exist in an overlay are still retrievable.
    Returns ``None`` when no layer (pending writes included) knows the entity.
    """
    key = normalize_key(entity_id)
    grouped = _pending_by_layer(pending, pending_layers)
    survey = _effective_survey(key, survey, grouped.get((Layer.SURVEY, key), []))
    dynamic = _effective_dynamic(key, dynamic, grouped.get((Layer.DYNAMIC, key), []))
    if base is None and survey is None and dynamic is None:
        return None
    return _merge_one(key, base, survey, dynamic)


def merge_all(
    base_records: Iterable[BaseRecord],
    survey_records: Iterable[SurveyOverlay],
    dynamic_records: Iterable[DynamicOverlay],
    pending: Iterable[PendingWriteEntry] = (),
    *,
    pending_layers: Mapping[str, Layer] = DEFAULT_PENDING_LAYERS,
) -> list[MergedView]:
    """Merge whole collections, one view per base record.

    Base is authoritative for existence: overlays without a base record are
    left out here.
    """
    surveys = _latest(survey_records)
    dynamics = _latest(dynamic_records)
    grouped = _pending_by_layer(pending, pending_layers)

    views: list[MergedView] = []
    for base in base_records:
        key = normalize_key(base.entity_id)
        survey = _effective_survey(key, surveys.get(key), grouped.get((Layer.SURVEY, key), []))
        dynamic = _effective_dynamic(key, dynamics.get(key), grouped.get((Layer.DYNAMIC, key), []))
        views.append(_merge_one(key, base, survey, dynamic))
    _logger.debug("Merged %d views (%d survey, %d dynamic overlays)", len(views), len(surveys), len(dynamics))
    return views

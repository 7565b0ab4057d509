"""Layered voter record models.

Three explicit layers feed every merged view:

* :class:`BaseRecord` - bulk-imported, replaced only by a fresh import.
* :class:`SurveyOverlay` - form-collected attributes, replaced wholesale on save.
* :class:`DynamicOverlay` - high-churn fields patched one at a time, each
  carrying its own timestamp.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Any

from pydantic import Field, field_validator
from pydantic.alias_generators import to_camel

from fieldsync._constants import FIELD_UPDATED_AT_FIELD, UPDATED_AT_FIELD
from fieldsync.ingestion.normalize import (
    clean_phone,
    first_present,
    normalize_gender,
    normalize_key,
    normalize_timestamp_seconds,
    parse_age,
    raw_identity,
    safe_str,
    snake_keys,
    surname_from_name,
)
from fieldsync.models._base import FieldSyncModel, coerce_entity_id, coerce_timestamp

# Bookkeeping keys of a remote overlay document that are not attributes.
_DOCUMENT_META_KEYS: frozenset[str] = frozenset(
    {
        "id",
        "voter_id",
        "entity_id",
        "updated_at",
        "last_updated",
        "last_synced_at",
        "field_updated_at",
    }
)


class Layer(StrEnum):
    BASE = "base"
    SURVEY = "survey"
    DYNAMIC = "dynamic"


def _attribute_fields(data: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in snake_keys(data).items() if key not in _DOCUMENT_META_KEYS}


def _camel_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {to_camel(key): value for key, value in fields.items()}


class BaseRecord(FieldSyncModel):
    """Immutable-per-import snapshot of a voter's bulk-loaded attributes."""

    entity_id: str
    voter_id: str = ""
    name: str = ""
    surname: str = ""
    serial_number: str = ""
    age: int = 0
    gender: str = ""
    booth_number: str = ""
    prabhag: str = ""
    yadi_bhag_address: str = ""
    polling_station_address: str = ""
    village: str = ""
    father_name: str = ""
    phone: str = ""
    raw: dict[str, Any] = Field(default_factory=dict)
    """Source row as received."""

    @field_validator("entity_id", mode="before")
    @classmethod
    def _normalize_entity_id(cls, value: Any) -> str:
        return coerce_entity_id(value)

    @classmethod
    def from_source(cls, data: Mapping[str, Any]) -> BaseRecord:
        """Build a record from a bulk-source row with inconsistent field naming."""
        raw_id = raw_identity(data)
        entity_id = normalize_key(raw_id)
        name = safe_str(first_present(data, "name", "Name", "voterNameEng"))
        return cls(
            entity_id=entity_id,
            voter_id=entity_id if raw_id is not None else "",
            name=name,
            surname=safe_str(first_present(data, "surname", "Surname")) or surname_from_name(name),
            serial_number=safe_str(first_present(data, "serialNumber", "serial", "serial_number")),
            age=parse_age(first_present(data, "age", "Age")),
            gender=normalize_gender(first_present(data, "gender", "Gender")),
            booth_number=safe_str(first_present(data, "boothNumber", "booth", "Booth", "booth_number")),
            prabhag=safe_str(first_present(data, "prabhag", "Prabhag", "ward", "wardNo")),
            yadi_bhag_address=safe_str(first_present(data, "yadiBhagAddress", "yadiAddress", "address")),
            polling_station_address=safe_str(
                first_present(data, "pollingStationAddress", "pollingStation", "pollingStationName")
            ),
            village=safe_str(first_present(data, "village", "area")),
            father_name=safe_str(first_present(data, "fatherName", "father")),
            phone=clean_phone(first_present(data, "phone", "mobile", "whatsapp")),
            raw=dict(data),
        )

    def layer_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude={"raw"})


class SurveyOverlay(FieldSyncModel):
    """Form-collected attributes for one entity."""

    entity_id: str
    fields: dict[str, Any] = Field(default_factory=dict)
    updated_at: float | None = None

    @field_validator("entity_id", mode="before")
    @classmethod
    def _normalize_entity_id(cls, value: Any) -> str:
        return coerce_entity_id(value)

    @field_validator("updated_at", mode="before")
    @classmethod
    def _normalize_updated_at(cls, value: Any) -> float | None:
        return coerce_timestamp(value)

    @field_validator("fields", mode="before")
    @classmethod
    def _snake_fields(cls, value: Any) -> Any:
        if isinstance(value, Mapping):
            return _attribute_fields(value)
        return value

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping[str, Any]) -> SurveyOverlay:
        snake = snake_keys(data)
        return cls(
            entity_id=raw_identity(data) or doc_id,
            fields=data,
            updated_at=first_present(snake, "updated_at", "last_updated"),
        )

    def to_payload(self) -> dict[str, Any]:
        """Remote document body (camelCase)."""
        payload = _camel_fields(self.fields)
        payload["voterId"] = self.entity_id
        if self.updated_at is not None:
            payload[UPDATED_AT_FIELD] = self.updated_at
        return payload


class DynamicOverlay(FieldSyncModel):
    """High-churn per-field attributes for one entity."""

    entity_id: str
    fields: dict[str, Any] = Field(default_factory=dict)
    field_updated_at: dict[str, float] = Field(default_factory=dict)
    updated_at: float | None = None

    @field_validator("entity_id", mode="before")
    @classmethod
    def _normalize_entity_id(cls, value: Any) -> str:
        return coerce_entity_id(value)

    @field_validator("updated_at", mode="before")
    @classmethod
    def _normalize_updated_at(cls, value: Any) -> float | None:
        return coerce_timestamp(value)

    @field_validator("fields", mode="before")
    @classmethod
    def _snake_fields(cls, value: Any) -> Any:
        if isinstance(value, Mapping):
            return _attribute_fields(value)
        return value

    @field_validator("field_updated_at", mode="before")
    @classmethod
    def _normalize_field_timestamps(cls, value: Any) -> Any:
        if not isinstance(value, Mapping):
            return value
        stamps: dict[str, float] = {}
        for key, raw_ts in snake_keys(value).items():
            ts = normalize_timestamp_seconds(raw_ts)
            if ts is not None:
                stamps[key] = ts
        return stamps

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping[str, Any]) -> DynamicOverlay:
        snake = snake_keys(data)
        stamps = data.get(FIELD_UPDATED_AT_FIELD)
        return cls(
            entity_id=raw_identity(data) or doc_id,
            fields=data,
            field_updated_at=stamps if isinstance(stamps, Mapping) else {},
            updated_at=first_present(snake, "updated_at", "last_updated"),
        )

    def timestamp_for(self, name: str) -> float | None:
        """Timestamp of one field, falling back to the document timestamp."""
        return self.field_updated_at.get(name, self.updated_at)

    def to_payload(self) -> dict[str, Any]:
        """Remote document body (camelCase)."""
        payload = _camel_fields(self.fields)
        payload["voterId"] = self.entity_id
        if self.updated_at is not None:
            payload[UPDATED_AT_FIELD] = self.updated_at
        if self.field_updated_at:
            payload[FIELD_UPDATED_AT_FIELD] = _camel_fields(self.field_updated_at)
        return payload


class MergedView(FieldSyncModel):
    """One entity as seen through every layer. Computed on read, never stored."""

    entity_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    sources: dict[str, Layer] = Field(default_factory=dict)
    """Layer that supplied each field of ``data``."""
    has_base: bool = False

    def get(self, name: str, default: Any = None) -> Any:
        return self.data.get(name, default)

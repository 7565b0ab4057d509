"""Base model for fieldsync records.

Every record model inherits from :class:`FieldSyncModel` which provides:

* ``alias_generator=to_camel`` so camelCase documents from the bulk source
  and the remote store map onto snake_case fields.
* ``populate_by_name`` so rows read back from the local store (dumped by
  field name) validate without aliases.
* Frozen instances: layers are never mutated in place, every change
  produces a new record.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from fieldsync.ingestion.normalize import normalize_key, normalize_timestamp_seconds


class FieldSyncModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_row(self) -> dict[str, Any]:
        """JSON-safe dict keyed by field name, as persisted locally."""
        return self.model_dump(mode="json")


def coerce_entity_id(value: Any) -> str:
    """Validator body shared by every model keyed on ``entity_id``."""
    return normalize_key(value)


def coerce_timestamp(value: Any) -> float | None:
    return normalize_timestamp_seconds(value)

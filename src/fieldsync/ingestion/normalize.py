"""Normalization helpers.

Centralizes lenient parsing of the noisy source data, including the
canonical entity key every layer is joined on.
"""

from __future__ import annotations

import logging
import math
import re
import secrets
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic.alias_generators import to_snake

_logger = logging.getLogger(__name__)

SYNTHETIC_KEY_PREFIX = "TMP_"

_WHITESPACE = re.compile(r"\s+")
_NON_DIGITS = re.compile(r"\D")
_MALE = re.compile(r"\bmale\b")
_FEMALE = re.compile(r"\bfemale\b")

# Raw identifier fields in order of preference.
_IDENTITY_FIELDS: tuple[str, ...] = (
    "voterId",
    "VoterId",
    "voter_id",
    "entityId",
    "entity_id",
    "id",
    "serialNumber",
)

_DEVANAGARI_DIGITS = str.maketrans("०१२३४५६७८९", "0123456789")

_TRUE_VALUES = frozenset({"true", "yes", "1", "y"})


def _synthetic_key() -> str:
    return f"{SYNTHETIC_KEY_PREFIX}{secrets.token_hex(6).upper()}"


def normalize_key(raw: Any) -> str:
    """Return the canonical entity key for *raw*.

    Trims, strips internal whitespace and uppercases. Anything that is not
    a string is coerced first (``None`` becomes empty). An empty result is
    replaced with a synthetic key instead of raising, so the record stays
    addressable.
    """
    text = "" if raw is None else str(raw)
    key = _WHITESPACE.sub("", text).upper()
    if key:
        return key
    synthetic = _synthetic_key()
    _logger.warning("Record has no usable identifier; assigned synthetic key %s", synthetic)
    return synthetic


def is_synthetic_key(key: str) -> bool:
    return key.startswith(SYNTHETIC_KEY_PREFIX)


def raw_identity(record: Mapping[str, Any]) -> Any:
    for field_name in _IDENTITY_FIELDS:
        value = record.get(field_name)
        if value is None:
            continue
        if str(value).strip():
            return value
    return None


def entity_key(record: Mapping[str, Any]) -> str:
    """Derive the canonical key for a raw record from its identity fields."""
    return normalize_key(raw_identity(record))


def safe_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def first_present(record: Mapping[str, Any], *names: str) -> Any:
    """Return the first value under *names* that is not ``None`` or blank."""
    for name in names:
        value = record.get(name)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def devanagari_to_ascii_digits(value: Any) -> str:
    return safe_str(value).translate(_DEVANAGARI_DIGITS)


def clean_phone(value: Any) -> str:
    """Keep only the digits of a phone number."""
    return _NON_DIGITS.sub("", devanagari_to_ascii_digits(value))


def parse_age(value: Any) -> int:
    digits = _NON_DIGITS.sub("", devanagari_to_ascii_digits(value))
    return int(digits) if digits else 0


def normalize_gender(value: Any) -> str:
    """Canonicalize gender labels to ``male``/``female`` where recognizable."""
    text = safe_str(value).lower()
    if not text:
        return ""
    if _FEMALE.search(text) or text in {"स्त्री", "f"}:
        return "female"
    if _MALE.search(text) or text in {"पुरुष", "m"}:
        return "male"
    return text


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    return safe_str(value).lower() in _TRUE_VALUES


def surname_from_name(name: Any) -> str:
    parts = safe_str(name).split()
    return parts[0] if parts else ""


def normalize_timestamp_seconds(value: Any) -> float | None:
    """Normalize timestamps to epoch seconds.

    - Empty/missing -> None
    - ISO-8601 strings are parsed (naive values are taken as UTC)
    - Negative or NaN -> None; 0 is the epoch itself
    - Milliseconds (> 1e11) -> seconds
    """

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        moment = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return moment.timestamp()
    try:
        ts = float(value)
    except (TypeError, ValueError):
        if not isinstance(value, str):
            return None
        try:
            moment = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return normalize_timestamp_seconds(moment)
    if math.isnan(ts) or ts < 0:
        return None
    if ts > 1e11:
        ts /= 1000.0
    return ts


def to_field_name(key: str) -> str:
    """Map a camelCase document key onto the snake_case field namespace."""
    return to_snake(key)


def snake_keys(data: Mapping[str, Any]) -> dict[str, Any]:
    return {to_field_name(str(key)): value for key, value in data.items()}

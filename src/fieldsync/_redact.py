"""Helpers for safe debug logging.

Survey payloads carry voter contact details. Contact numbers are masked
down to their last digits and credentials are dropped before anything
reaches a DEBUG log.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel

_CONTACT_KEYS: frozenset[str] = frozenset({"phone", "whatsapp", "mobile", "email"})
_SECRET_KEYS: frozenset[str] = frozenset({"apikey", "api_key", "authorization", "token"})

_VISIBLE_TAIL = 2


def mask_contact(value: Any) -> str:
    """Mask a contact value, keeping only its last characters."""
    text = str(value)
    if len(text) <= _VISIBLE_TAIL:
        return "*" * len(text)
    return "*" * (len(text) - _VISIBLE_TAIL) + text[-_VISIBLE_TAIL:]


def redact_for_log(value: Any, *, max_items: int = 20, _depth: int = 0) -> Any:
    """Return a redacted copy of *value* suitable for debug logs.

    Sequences longer than *max_items* are summarized, since replay batches
    can hold hundreds of payloads.
    """
    if _depth > 10:
        return "<max-depth>"

    if isinstance(value, BaseModel):
        value = value.model_dump(by_alias=True)

    if isinstance(value, Mapping):
        redacted: dict[str, Any] = {}
        for k, v in value.items():
            key = str(k)
            lowered = key.lower()
            if lowered in _SECRET_KEYS:
                redacted[key] = "<redacted>"
            elif lowered in _CONTACT_KEYS and v:
                redacted[key] = mask_contact(v)
            else:
                redacted[key] = redact_for_log(v, max_items=max_items, _depth=_depth + 1)
        return redacted

    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        items = [redact_for_log(v, max_items=max_items, _depth=_depth + 1) for v in value[:max_items]]
        if len(value) > max_items:
            items.append(f"<+{len(value) - max_items} more>")
        return items

    return value

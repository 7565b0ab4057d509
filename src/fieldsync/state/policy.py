"""Field precedence policy.

This module contains *no* payload parsing. Callers hand in timestamps that
were normalized at the model boundary.
"""

from __future__ import annotations

from fieldsync.models.records import Layer


def layer_priority(layer: Layer) -> int:
    """Higher wins when timestamps cannot decide."""
    priorities: dict[Layer, int] = {
        Layer.BASE: 0,
        Layer.SURVEY: 10,
        Layer.DYNAMIC: 20,
    }
    return priorities.get(layer, 0)


def overlay_wins(
    *,
    current_layer: Layer,
    current_ts: float | None,
    incoming_layer: Layer,
    incoming_ts: float | None,
) -> bool:
    """Decide whether an overlay value replaces the one already merged.

    Policy:
    - If both values carry a timestamp: the later one wins, ties go to the
      later layer.
    - Otherwise: fixed layer order base -> survey -> dynamic.
    """
    if current_ts is not None and incoming_ts is not None and current_ts != incoming_ts:
        return incoming_ts > current_ts
    return layer_priority(incoming_layer) >= layer_priority(current_layer)


def should_accept_field(*, cached_ts: float | None, incoming_ts: float | None) -> bool:
    """Read-modify-write rule for one dynamic field.

    A stale write (older timestamp) must not revert a newer value. A write
    without a timestamp is taken as current.
    """
    if cached_ts is None or incoming_ts is None:
        return True
    return incoming_ts >= cached_ts

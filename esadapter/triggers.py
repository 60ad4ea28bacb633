from __future__ import annotations
from typing import Dict, Optional, Sequence, Tuple
from esadapter.config import parse_trigger_order
from esadapter.models import FlushTrigger, TriggerKind

DEFAULT_ORDER: Tuple[TriggerKind, ...] = (TriggerKind.SIZE, TriggerKind.COUNT, TriggerKind.AGE)


def trigger_order(value: str) -> Tuple[TriggerKind, ...]:
    return tuple(TriggerKind(name) for name in parse_trigger_order(value))


def first_breach(
    order: Sequence[TriggerKind],
    measured: Dict[TriggerKind, float],
    limits: Dict[TriggerKind, Optional[float]],
) -> Optional[FlushTrigger]:
    """Walk the conditions in order and return the first one at or over its limit.

    A limit of None or <= 0 disables that condition; a kind missing from
    `measured` is not evaluated.
    """
    for kind in order:
        limit = limits.get(kind)
        if limit is None or limit <= 0:
            continue
        value = measured.get(kind)
        if value is None:
            continue
        if value >= limit:
            return FlushTrigger(kind=kind, threshold=limit, measured=value)
    return None

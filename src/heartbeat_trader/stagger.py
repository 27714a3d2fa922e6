"""Golden-ratio stagger offsets and deterministic trigger sequences.

Trader ``i`` (ordinal position in the input) with interval ``T`` seconds gets

    offset = floor((i * phi * T) mod T)

where phi is the fractional golden ratio. The irrational step spreads phases
evenly across traders so that many traders sharing an interval (e.g. all at
300s) do not fire in the same second. If the formula lands on an offset
already used by an earlier trader with the same interval, the next free
second (mod T) is taken instead.
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime, timedelta

from heartbeat_trader.errors import InvalidArgument

GOLDEN_RATIO = 0.618033988749


def _interval(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidArgument(f"interval must be a positive number of seconds, got {value!r}")
    return value


def golden_offset(index: int, interval: int, golden_ratio: float = GOLDEN_RATIO) -> int:
    interval = _interval(interval)
    return math.floor((index * golden_ratio * interval) % interval)


def compute_offsets(
    traders: Iterable[tuple[int, int]],
    golden_ratio: float = GOLDEN_RATIO,
) -> dict[int, int]:
    """Map trader id -> offset seconds for ``(trader_id, interval_seconds)`` pairs."""
    offsets: dict[int, int] = {}
    taken: dict[int, set[int]] = defaultdict(set)
    for index, (trader_id, interval) in enumerate(traders):
        offset = golden_offset(index, interval, golden_ratio)
        used = taken[interval]
        # Once every slot is used, collisions are unavoidable
        if len(used) < interval:
            while offset in used:
                offset = (offset + 1) % interval
        used.add(offset)
        offsets[trader_id] = offset
    return offsets


def first_trigger(base: datetime, interval: int, offset: int) -> datetime:
    _interval(interval)
    if offset < 0:
        raise InvalidArgument(f"offset must be >= 0, got {offset}")
    return base + timedelta(seconds=offset)


def next_trigger(prev: datetime, interval: int) -> datetime:
    return prev + timedelta(seconds=_interval(interval))


def generate_triggers(
    start: datetime,
    end: datetime,
    interval: int,
    offset: int,
) -> list[datetime]:
    """All triggers of the series starting at ``start + offset`` that lie in [start, end]."""
    triggers: list[datetime] = []
    current = first_trigger(start, interval, offset)
    while current <= end:
        triggers.append(current)
        current = next_trigger(current, interval)
    return triggers


def triggers_between(
    anchor: datetime,
    interval: int,
    range_start: datetime,
    range_end: datetime,
) -> list[datetime]:
    """Triggers of the series ``anchor + k * interval`` (k >= 0) inside [range_start, range_end]."""
    interval = _interval(interval)
    if range_start <= anchor:
        return generate_triggers(anchor, range_end, interval, 0)
    elapsed = (range_start - anchor).total_seconds()
    steps = math.ceil(elapsed / interval)
    first = anchor + timedelta(seconds=steps * interval)
    return generate_triggers(first, range_end, interval, 0)


def advance_past(trigger: datetime, interval: int, now: datetime) -> datetime:
    """Next trigger of the series strictly after ``now`` (missed beats are skipped)."""
    interval = _interval(interval)
    nxt = next_trigger(trigger, interval)
    if nxt > now:
        return nxt
    missed = math.floor((now - nxt).total_seconds() / interval) + 1
    return nxt + timedelta(seconds=missed * interval)

# tradewatch/monitoring/trailing.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from tradewatch.monitoring.models import Direction


@dataclass(frozen=True)
class TrailStep:
    stop: float
    anchor: float


def next_trailing_stop(
    direction: Direction,
    price: float,
    entry: float,
    stop: Optional[float],
    anchor: Optional[float],
    trailing_x: float,
    trailing_y: float,
) -> Optional[TrailStep]:
    """
    One ratchet step, or None when the stop stays where it is.

    The price must have travelled `trailing_y` beyond the last ratchet point
    (entry before the first step), and the candidate stop `trailing_x` behind
    the price must improve on both the current stop and the entry.
    """
    if trailing_x <= 0 or trailing_y <= 0:
        return None

    ref = entry if anchor is None else anchor

    if direction == Direction.BUY:
        if price - ref < trailing_y:
            return None
        candidate = price - trailing_x
        floor = entry if stop is None else max(stop, entry)
        if candidate > floor:
            return TrailStep(stop=candidate, anchor=price)
        return None

    if ref - price < trailing_y:
        return None
    candidate = price + trailing_x
    ceiling = entry if stop is None else min(stop, entry)
    if candidate < ceiling:
        return TrailStep(stop=candidate, anchor=price)
    return None

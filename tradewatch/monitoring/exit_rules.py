# tradewatch/monitoring/exit_rules.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from tradewatch.core.errors import StateValidationError
from tradewatch.monitoring.models import ActivePosition, Direction, ExitCause


def validate_sl_tp(
    direction: Direction,
    entry_price: float,
    stop_loss: float,
    target: float,
) -> None:
    """
    Validate SL/TP invariants.
    BUY:  stop_loss < entry_price < target
    SELL: target < entry_price < stop_loss
    Raises StateValidationError if invalid.
    """
    if direction == Direction.BUY:
        if not (stop_loss < entry_price < target):
            raise StateValidationError(
                f"Invalid SL/TP for BUY: sl={stop_loss} entry={entry_price} tp={target}"
            )
        return

    if direction == Direction.SELL:
        if not (target < entry_price < stop_loss):
            raise StateValidationError(
                f"Invalid SL/TP for SELL: sl={stop_loss} entry={entry_price} tp={target}"
            )
        return

    raise StateValidationError(f"Invalid direction: {direction}")


def levels_for(
    direction: Direction, entry_price: float, target_points: float, stop_loss_points: float
) -> Tuple[float, float]:
    """(target, stop_loss) at the configured distances from the fill."""
    if direction == Direction.BUY:
        target = entry_price + target_points
        stop = entry_price - stop_loss_points
    else:
        target = entry_price - target_points
        stop = entry_price + stop_loss_points
    validate_sl_tp(direction, entry_price, stop, target)
    return target, stop


def evaluate_exit(
    position: ActivePosition,
    price: float,
    now: datetime,
    market_close: Tuple[int, int] = (15, 15),
    market_tz: timezone = timezone.utc,
) -> Optional[ExitCause]:
    """
    Unified exit policy for an open position.
    Price exits take precedence over time exits.
    """
    if not position.is_open:
        return None

    if position.direction == Direction.BUY:
        if price >= position.target:
            return ExitCause.TARGET
        if price <= position.stop_loss:
            return ExitCause.STOP_LOSS
    else:
        if price <= position.target:
            return ExitCause.TARGET
        if price >= position.stop_loss:
            return ExitCause.STOP_LOSS

    if position.time_based_exit and position.exit_after_minutes > 0:
        if now - position.opened_at >= timedelta(minutes=position.exit_after_minutes):
            return ExitCause.TIME

    if position.exit_at_market_close:
        local = now.astimezone(market_tz)
        hh, mm = market_close
        if (local.hour, local.minute) >= (hh, mm):
            return ExitCause.MARKET_CLOSE

    return None

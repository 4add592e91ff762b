# tradewatch/monitoring/service.py
from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from tradewatch.core.config import settings
from tradewatch.core.errors import IllegalTransition, NotFound, StateValidationError
from tradewatch.ledger.models import TradeAction, TradeLogEntry
from tradewatch.monitoring.exit_rules import evaluate_exit, levels_for
from tradewatch.monitoring.models import (
    MANUAL_SL_REASON,
    REENTRY_CAUSES,
    TRAILING_SL_REASON,
    ActivePosition,
    Direction,
    ExitCause,
    MonitoredSymbol,
    OrderModification,
    PendingSignal,
    PositionStatus,
    SignalKind,
    SLModification,
    SymbolConfig,
    TriggerStatus,
    UserMonitoringState,
)
from tradewatch.monitoring.trailing import next_trailing_stop
from tradewatch.monitoring.transitions import INITIAL, SIGNAL_PHASES, TERMINAL, check_transition
from tradewatch.persistence.db import DB, utc_now
from tradewatch.persistence.state_store import MonitoringStateStore
from tradewatch.symbols.lots import lot_size_for

log = logging.getLogger("tradewatch.monitoring")

_USER_SCOPE = "*"


def _initial_phase(
    ltp: Optional[float], hma: Optional[float], now: datetime
) -> Tuple[TriggerStatus, Optional[PendingSignal]]:
    """
    Price above the HMA: wait for the pullback (reversal).
    Price at/below the HMA: the reversal already happened, wait for the crossover.
    """
    if ltp is None or hma is None:
        return TriggerStatus.WAITING_FOR_REVERSAL, None
    if ltp > hma:
        return TriggerStatus.WAITING_FOR_REVERSAL, PendingSignal(
            direction=SignalKind.REVERSAL,
            triggered_at=now,
            hma_at_trigger=hma,
            ltp_at_trigger=ltp,
        )
    return TriggerStatus.WAITING_FOR_ENTRY, PendingSignal(
        direction=SignalKind.ENTRY,
        triggered_at=now,
        hma_at_trigger=hma,
        ltp_at_trigger=ltp,
        reversal_detected=True,
        reversal_confirmed=True,
        entry_ready_at=now,
    )


def _reset_order_tracking(sym: MonitoredSymbol) -> None:
    sym.order_placed = False
    sym.order_placed_at = None
    sym.order_id = None
    sym.sell_order_id = None
    sym.order_status = None
    sym.limit_price = None
    sym.order_hma = None
    sym.last_order_modification = None
    sym.order_modification_count = 0
    sym.order_modification_reason = None
    sym.order_modifications = []
    sym.sl_stop_price = None
    sym.sl_trigger_price = None
    sym.status_reason = None


class MonitoringService:
    """
    Per-user signal/position state.

    Every operation loads the user's document, applies one transition and
    saves it inside a single DB transaction, under a per-(user, symbol) lock.
    A failing operation leaves the stored document untouched.
    """

    def __init__(
        self,
        db: DB,
        ledger=None,
        store: Optional[MonitoringStateStore] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.ledger = ledger
        self.store = store or MonitoringStateStore(db)
        self.clock = clock
        self._locks: Dict[Tuple[str, str], threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    # =========================
    # Plumbing
    # =========================
    def _lock(self, user_id: str, scope: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[(user_id, scope)]

    @contextmanager
    def _edit(
        self, user_id: str, scope: str, create: bool = False
    ) -> Iterator[Tuple[sqlite3.Connection, UserMonitoringState]]:
        with self._lock(user_id, scope):
            with self.db.transaction() as conn:
                state = self.store.load(conn, user_id)
                if state is None:
                    if not create:
                        raise NotFound(f"no monitoring state for user {user_id}")
                    state = UserMonitoringState(user_id=user_id)
                yield conn, state
                self.store.save(conn, state)

    def _scope_of_position(self, user_id: str, position_id: str) -> str:
        # symbol_id of a position never changes, so an unlocked read is enough
        state = self.store.get(user_id)
        if state is None:
            raise NotFound(f"no monitoring state for user {user_id}")
        return state.position(position_id).symbol_id

    @staticmethod
    def _move(sym: MonitoredSymbol, target: TriggerStatus) -> None:
        check_transition(sym.id, sym.trigger_status, target)
        sym.trigger_status = target
        if target not in SIGNAL_PHASES:
            sym.pending_signal = None

    def _dispatch(self, written: List[TradeLogEntry]) -> None:
        if self.ledger is None:
            return
        for entry in written:
            self.ledger.dispatch(entry)

    def _journal(
        self,
        conn: sqlite3.Connection,
        written: List[TradeLogEntry],
        user_id: str,
        action: TradeAction,
        order_id: Optional[str],
        payload: dict,
    ) -> None:
        if self.ledger is None:
            return
        _, entry = self.ledger.record_in(conn, user_id, action, order_id, "APP", payload)
        if entry is not None:
            written.append(entry)

    # =========================
    # Monitoring session
    # =========================
    def start_monitoring(self, user_id: str) -> UserMonitoringState:
        now = self.clock()
        with self._edit(user_id, _USER_SCOPE, create=True) as (_, state):
            if not state.execution.is_monitoring:
                state.execution.is_monitoring = True
                state.execution.monitoring_start_time = now
        log.info("monitoring started user=%s", user_id)
        return state

    def stop_monitoring(self, user_id: str) -> UserMonitoringState:
        with self._edit(user_id, _USER_SCOPE, create=True) as (_, state):
            state.execution.is_monitoring = False
        log.info("monitoring stopped user=%s", user_id)
        return state

    def get_state(self, user_id: str) -> UserMonitoringState:
        return self.store.get(user_id) or UserMonitoringState(user_id=user_id)

    def clear_monitoring(self, user_id: str) -> UserMonitoringState:
        """Drops every monitored symbol and stops monitoring. Positions are kept."""
        with self._edit(user_id, _USER_SCOPE, create=True) as (_, state):
            state.monitored_symbols = []
            state.execution.is_monitoring = False
        log.info("monitoring cleared user=%s", user_id)
        return state

    # =========================
    # Symbols
    # =========================
    def add_symbol(
        self,
        user_id: str,
        symbol: str,
        direction: Direction,
        config: Optional[SymbolConfig] = None,
        ltp: Optional[float] = None,
        hma: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> MonitoredSymbol:
        now = now or self.clock()
        config = config or SymbolConfig()
        symbol = (symbol or "").strip().upper()
        if not symbol:
            raise StateValidationError("symbol is required")
        if config.lots < 1:
            raise StateValidationError("lots must be >= 1")
        if config.target_points <= 0 or config.stop_loss_points <= 0:
            raise StateValidationError("target_points and stop_loss_points must be > 0")
        if config.max_re_entries < 0:
            raise StateValidationError("max_re_entries must be >= 0")
        if config.lot_size is None:
            config.lot_size = lot_size_for(
                symbol, settings.LOT_SIZE_MAP, settings.DEFAULT_LOT_SIZE, config.index_name
            )

        sym_id = str(uuid.uuid4())
        status, pending = _initial_phase(ltp, hma, now)
        check_transition(sym_id, INITIAL, status)

        with self._edit(user_id, sym_id, create=True) as (_, state):
            for s in state.monitored_symbols:
                if s.symbol == symbol and s.trigger_status not in TERMINAL:
                    raise StateValidationError(f"{symbol} is already monitored")
            sym = MonitoredSymbol(
                id=sym_id,
                symbol=symbol,
                direction=Direction(direction),
                config=config,
                trigger_status=status,
                added_at=now,
                current_ltp=ltp,
                hma_value=hma,
                last_update=now if ltp is not None else None,
                pending_signal=pending,
            )
            state.monitored_symbols.append(sym)
        log.info("added %s user=%s phase=%s", symbol, user_id, status.value)
        return sym

    def remove_symbol(self, user_id: str, symbol_id: str) -> MonitoredSymbol:
        with self._edit(user_id, symbol_id) as (_, state):
            sym = state.symbol(symbol_id)
            if state.open_position_for(symbol_id) is not None:
                raise StateValidationError(f"{sym.symbol} still has an open position")
            state.monitored_symbols = [s for s in state.monitored_symbols if s.id != symbol_id]
        log.info("removed %s user=%s", sym.symbol, user_id)
        return sym

    def update_telemetry(
        self,
        user_id: str,
        symbol_id: str,
        ltp: Optional[float],
        hma: Optional[float],
        now: Optional[datetime] = None,
    ) -> MonitoredSymbol:
        now = now or self.clock()
        with self._edit(user_id, symbol_id) as (_, state):
            sym = state.symbol(symbol_id)
            if ltp is not None:
                sym.current_ltp = ltp
                state.execution.last_market_data_update = now
            if hma is not None:
                sym.last_hma_value = sym.hma_value
                sym.hma_value = hma
                state.execution.last_hma_update = now
            sym.last_update = now
        return sym

    # =========================
    # Signal phases
    # =========================
    def begin_reversal_confirmation(
        self,
        user_id: str,
        symbol_id: str,
        window_seconds: float,
        now: Optional[datetime] = None,
    ) -> MonitoredSymbol:
        now = now or self.clock()
        with self._edit(user_id, symbol_id) as (_, state):
            sym = state.symbol(symbol_id)
            self._move(sym, TriggerStatus.CONFIRMING_REVERSAL)
            ps = sym.pending_signal or PendingSignal(
                direction=SignalKind.REVERSAL,
                triggered_at=now,
                hma_at_trigger=sym.hma_value,
                ltp_at_trigger=sym.current_ltp,
            )
            ps.reversal_detected = True
            ps.confirmation_start_time = now
            ps.confirmation_end_time = now + timedelta(seconds=window_seconds)
            sym.pending_signal = ps
        return sym

    def confirm_reversal(
        self, user_id: str, symbol_id: str, now: Optional[datetime] = None
    ) -> MonitoredSymbol:
        now = now or self.clock()
        with self._edit(user_id, symbol_id) as (_, state):
            sym = state.symbol(symbol_id)
            self._move(sym, TriggerStatus.WAITING_FOR_ENTRY)
            prev = sym.pending_signal
            sym.pending_signal = PendingSignal(
                direction=SignalKind.ENTRY,
                triggered_at=prev.triggered_at if prev else now,
                hma_at_trigger=sym.hma_value,
                ltp_at_trigger=sym.current_ltp,
                reversal_detected=True,
                confirmation_start_time=prev.confirmation_start_time if prev else None,
                confirmation_end_time=prev.confirmation_end_time if prev else None,
                reversal_confirmed=True,
                entry_ready_at=now,
            )
        return sym

    def reject_reversal(
        self, user_id: str, symbol_id: str, now: Optional[datetime] = None
    ) -> MonitoredSymbol:
        now = now or self.clock()
        with self._edit(user_id, symbol_id) as (_, state):
            sym = state.symbol(symbol_id)
            self._move(sym, TriggerStatus.WAITING_FOR_REVERSAL)
            sym.pending_signal = PendingSignal(
                direction=SignalKind.REVERSAL,
                triggered_at=now,
                hma_at_trigger=sym.hma_value,
                ltp_at_trigger=sym.current_ltp,
            )
        return sym

    def begin_entry_confirmation(
        self,
        user_id: str,
        symbol_id: str,
        window_seconds: float,
        now: Optional[datetime] = None,
    ) -> MonitoredSymbol:
        now = now or self.clock()
        with self._edit(user_id, symbol_id) as (_, state):
            sym = state.symbol(symbol_id)
            self._move(sym, TriggerStatus.CONFIRMING_ENTRY)
            ps = sym.pending_signal or PendingSignal(
                direction=SignalKind.ENTRY,
                triggered_at=now,
                reversal_detected=True,
                reversal_confirmed=True,
            )
            ps.crossover_detected = True
            ps.crossover_time = now
            ps.confirmation_start_time = now
            ps.confirmation_end_time = now + timedelta(seconds=window_seconds)
            ps.hma_at_trigger = sym.hma_value
            ps.ltp_at_trigger = sym.current_ltp
            sym.pending_signal = ps
        return sym

    def mark_triggered(
        self, user_id: str, symbol_id: str, now: Optional[datetime] = None
    ) -> MonitoredSymbol:
        now = now or self.clock()
        with self._edit(user_id, symbol_id) as (_, state):
            sym = state.symbol(symbol_id)
            self._move(sym, TriggerStatus.TRIGGERED)
            ps = sym.pending_signal or PendingSignal(direction=SignalKind.ENTRY, triggered_at=now)
            if not ps.crossover_detected:
                ps.crossover_detected = True
                ps.crossover_time = now
            sym.pending_signal = ps
        return sym

    def mark_confirmed(
        self, user_id: str, symbol_id: str, now: Optional[datetime] = None
    ) -> MonitoredSymbol:
        now = now or self.clock()
        with self._edit(user_id, symbol_id) as (_, state):
            sym = state.symbol(symbol_id)
            self._move(sym, TriggerStatus.CONFIRMED)
            if sym.pending_signal is None:
                sym.pending_signal = PendingSignal(direction=SignalKind.ENTRY, triggered_at=now)
            sym.pending_signal.confirmation_end_time = now
        return sym

    def abandon_entry(
        self, user_id: str, symbol_id: str, now: Optional[datetime] = None
    ) -> MonitoredSymbol:
        """Crossover did not hold through the confirmation window."""
        now = now or self.clock()
        with self._edit(user_id, symbol_id) as (_, state):
            sym = state.symbol(symbol_id)
            self._move(sym, TriggerStatus.WAITING_FOR_ENTRY)
            ps = sym.pending_signal
            if ps is None:
                ps = PendingSignal(
                    direction=SignalKind.ENTRY,
                    triggered_at=now,
                    reversal_detected=True,
                    reversal_confirmed=True,
                )
            ps.crossover_detected = False
            ps.crossover_time = None
            ps.confirmation_start_time = None
            ps.confirmation_end_time = None
            sym.pending_signal = ps
        return sym

    def reset_symbol_opportunity(self, user_id: str, symbol_id: str) -> MonitoredSymbol:
        """Back to a fresh WAITING_FOR_REVERSAL for a symbol with no live order."""
        with self._edit(user_id, symbol_id) as (_, state):
            sym = state.symbol(symbol_id)
            if sym.trigger_status not in SIGNAL_PHASES | {TriggerStatus.ORDER_REJECTED}:
                raise IllegalTransition(
                    sym.id, sym.trigger_status.value, TriggerStatus.WAITING_FOR_REVERSAL.value
                )
            _reset_order_tracking(sym)
            sym.trigger_status = TriggerStatus.WAITING_FOR_REVERSAL
            sym.pending_signal = None
        return sym

    # =========================
    # Entry order
    # =========================
    def record_order_placed(
        self,
        user_id: str,
        symbol_id: str,
        order_id: str,
        limit_price: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> MonitoredSymbol:
        if not order_id or not str(order_id).strip():
            raise StateValidationError("order_id is required to record a placed order")
        now = now or self.clock()
        with self._edit(user_id, symbol_id) as (_, state):
            sym = state.symbol(symbol_id)
            self._move(sym, TriggerStatus.ORDER_PLACED)
            sym.order_placed = True
            sym.order_placed_at = now
            sym.order_id = str(order_id).strip()
            sym.order_status = "PENDING"
            sym.limit_price = limit_price
            sym.order_hma = sym.hma_value
            sym.status_reason = None
        log.info("order placed %s order=%s user=%s", sym.symbol, sym.order_id, user_id)
        return sym

    def record_order_modified(
        self,
        user_id: str,
        symbol_id: str,
        new_order_id: str,
        new_hma: Optional[float] = None,
        new_limit_price: Optional[float] = None,
        reason: str = "",
        modification_type: str = "hma_update",
        now: Optional[datetime] = None,
    ) -> MonitoredSymbol:
        if not new_order_id or not str(new_order_id).strip():
            raise StateValidationError("new_order_id is required to record a modification")
        now = now or self.clock()
        with self._edit(user_id, symbol_id) as (_, state):
            sym = state.symbol(symbol_id)
            self._move(sym, TriggerStatus.ORDER_MODIFIED)
            sym.order_modifications.append(
                OrderModification(
                    timestamp=now,
                    old_order_id=sym.order_id,
                    new_order_id=str(new_order_id).strip(),
                    old_hma=sym.order_hma,
                    new_hma=new_hma,
                    old_limit_price=sym.limit_price,
                    new_limit_price=new_limit_price,
                    reason=reason,
                    modification_type=modification_type,
                )
            )
            sym.order_id = str(new_order_id).strip()
            sym.order_hma = new_hma
            sym.limit_price = new_limit_price
            sym.order_modification_count += 1
            sym.last_order_modification = now
            sym.order_modification_reason = reason
            sym.order_status = "PENDING"
        return sym

    def record_order_rejected(
        self, user_id: str, symbol_id: str, reason: str = ""
    ) -> MonitoredSymbol:
        with self._edit(user_id, symbol_id) as (_, state):
            sym = state.symbol(symbol_id)
            self._move(sym, TriggerStatus.ORDER_REJECTED)
            sym.order_placed = False
            sym.order_status = "REJECTED"
            sym.status_reason = reason or None
        log.warning("order rejected %s order=%s: %s", sym.symbol, sym.order_id, reason)
        return sym

    def rearm_after_rejection(
        self, user_id: str, symbol_id: str, now: Optional[datetime] = None
    ) -> MonitoredSymbol:
        now = now or self.clock()
        with self._edit(user_id, symbol_id) as (_, state):
            sym = state.symbol(symbol_id)
            self._move(sym, TriggerStatus.WAITING_FOR_ENTRY)
            _reset_order_tracking(sym)
            sym.pending_signal = PendingSignal(
                direction=SignalKind.ENTRY,
                triggered_at=now,
                hma_at_trigger=sym.hma_value,
                ltp_at_trigger=sym.current_ltp,
                reversal_detected=True,
                reversal_confirmed=True,
                entry_ready_at=now,
            )
        return sym

    def cancel_symbol(self, user_id: str, symbol_id: str, reason: str = "") -> MonitoredSymbol:
        with self._edit(user_id, symbol_id) as (_, state):
            sym = state.symbol(symbol_id)
            self._move(sym, TriggerStatus.CANCELLED)
            if sym.order_placed:
                sym.order_status = "CANCELLED"
            sym.order_placed = False
            sym.status_reason = reason or None
        log.info("cancelled %s user=%s reason=%s", sym.symbol, user_id, reason)
        return sym

    def record_entry_filled(
        self,
        user_id: str,
        symbol_id: str,
        order_id: Optional[str],
        fill_price: float,
        now: Optional[datetime] = None,
    ) -> ActivePosition:
        now = now or self.clock()
        with self._edit(user_id, symbol_id) as (_, state):
            sym = state.symbol(symbol_id)
            if order_id and sym.order_id and str(order_id) != sym.order_id:
                raise StateValidationError(
                    f"{sym.symbol}: fill for order {order_id} but tracking {sym.order_id}"
                )
            cfg = sym.config
            target, stop = levels_for(
                sym.direction, float(fill_price), cfg.target_points, cfg.stop_loss_points
            )

            self._move(sym, TriggerStatus.EXECUTED)
            self._move(sym, TriggerStatus.ACTIVE_POSITION)
            sym.order_status = "FILLED"

            lot_size = cfg.lot_size or lot_size_for(
                sym.symbol, settings.LOT_SIZE_MAP, settings.DEFAULT_LOT_SIZE, cfg.index_name
            )
            pos = ActivePosition(
                id=str(uuid.uuid4()),
                symbol_id=sym.id,
                symbol=sym.symbol,
                direction=sym.direction,
                lots=cfg.lots,
                quantity=float(cfg.lots * lot_size),
                bought_price=float(fill_price),
                current_price=float(fill_price),
                target=target,
                stop_loss=stop,
                initial_stop_loss=stop,
                opened_at=now,
                use_trailing_stoploss=cfg.use_trailing_stoploss,
                trailing_x=cfg.trailing_x,
                trailing_y=cfg.trailing_y,
                trail_anchor=float(fill_price),
                time_based_exit=cfg.time_based_exit,
                exit_after_minutes=cfg.exit_after_minutes,
                exit_at_market_close=cfg.exit_at_market_close,
                buy_order_id=sym.order_id,
                re_entry_count=sym.re_entry_count,
            )
            pos.recompute()
            state.active_positions.append(pos)
            state.execution.total_trades_executed += 1
        log.info(
            "position opened %s qty=%s @ %s target=%s sl=%s",
            pos.symbol,
            pos.quantity,
            pos.bought_price,
            pos.target,
            pos.stop_loss,
        )
        return pos

    # =========================
    # Positions
    # =========================
    def attach_stop_order(
        self,
        user_id: str,
        position_id: str,
        sl_order_id: str,
        stop_price: float,
        trigger_price: Optional[float] = None,
    ) -> ActivePosition:
        scope = self._scope_of_position(user_id, position_id)
        with self._edit(user_id, scope) as (_, state):
            pos = state.position(position_id)
            if not pos.is_open:
                raise StateValidationError(f"position {position_id} is closed")
            pos.sl_order_id = sl_order_id
            pos.sl_stop_price = stop_price
            pos.sl_trigger_price = trigger_price
            for sym in state.monitored_symbols:
                if sym.id == pos.symbol_id:
                    sym.sl_stop_price = stop_price
                    sym.sl_trigger_price = trigger_price
        return pos

    def apply_price(
        self,
        user_id: str,
        position_id: str,
        price: float,
        now: Optional[datetime] = None,
    ) -> Tuple[ActivePosition, Optional[ExitCause]]:
        """
        Mark-to-market one tick: trailing ratchet, PnL, exit flags.
        The ratchet and its TRAILING_UPDATE journal row commit together.
        """
        now = now or self.clock()
        written: List[TradeLogEntry] = []
        scope = self._scope_of_position(user_id, position_id)

        with self._edit(user_id, scope) as (conn, state):
            pos = state.position(position_id)
            if not pos.is_open:
                raise StateValidationError(f"position {position_id} is closed")
            pos.current_price = float(price)

            if pos.use_trailing_stoploss and pos.status == PositionStatus.ACTIVE:
                step = next_trailing_stop(
                    pos.direction,
                    float(price),
                    pos.bought_price,
                    pos.stop_loss,
                    pos.trail_anchor,
                    pos.trailing_x,
                    pos.trailing_y,
                )
                if step is not None:
                    old = pos.stop_loss
                    pos.stop_loss = step.stop
                    pos.trail_anchor = step.anchor
                    pos.sl_modifications.append(
                        SLModification(
                            timestamp=now,
                            old_stop_loss=old,
                            new_stop_loss=step.stop,
                            reason=TRAILING_SL_REASON,
                            order_id=pos.sl_order_id,
                        )
                    )
                    log.info("trailing %s sl %s -> %s @ %s", pos.symbol, old, step.stop, price)
                    self._journal(
                        conn,
                        written,
                        user_id,
                        TradeAction.TRAILING_UPDATE,
                        pos.sl_order_id or pos.buy_order_id,
                        {
                            "symbol": pos.symbol,
                            "quantity": pos.quantity,
                            "price": float(price),
                            "details": {
                                "old_stop_loss": old,
                                "new_stop_loss": step.stop,
                                "trail_anchor": step.anchor,
                            },
                        },
                    )

            cause = evaluate_exit(
                pos, float(price), now, settings.market_close(), settings.market_tz()
            )
            if cause == ExitCause.TARGET:
                pos.status = PositionStatus.TARGET_HIT
            elif cause == ExitCause.STOP_LOSS:
                pos.status = PositionStatus.STOP_LOSS_HIT
            pos.recompute()

            for sym in state.monitored_symbols:
                if sym.id == pos.symbol_id:
                    sym.current_ltp = float(price)

        self._dispatch(written)
        return pos, cause

    def modify_stop_loss(
        self,
        user_id: str,
        position_id: str,
        new_stop: float,
        reason: str,
        order_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ActivePosition:
        now = now or self.clock()
        scope = self._scope_of_position(user_id, position_id)
        with self._edit(user_id, scope) as (_, state):
            pos = state.position(position_id)
            if not pos.is_open:
                raise StateValidationError(f"position {position_id} is closed")
            old = pos.stop_loss
            if pos.direction == Direction.BUY:
                loosens = new_stop < old
            else:
                loosens = new_stop > old
            if loosens and reason != MANUAL_SL_REASON:
                raise StateValidationError(
                    f"{pos.symbol}: stop {old} -> {new_stop} loosens the position"
                )
            pos.stop_loss = float(new_stop)
            if order_id:
                pos.sl_order_id = order_id
            pos.sl_modifications.append(
                SLModification(
                    timestamp=now,
                    old_stop_loss=old,
                    new_stop_loss=float(new_stop),
                    reason=reason,
                    order_id=order_id or pos.sl_order_id,
                )
            )
        return pos

    def close_position(
        self,
        user_id: str,
        position_id: str,
        exit_price: float,
        exit_order_id: Optional[str] = None,
        now: Optional[datetime] = None,
        cause: ExitCause = ExitCause.MANUAL,
    ) -> ActivePosition:
        now = now or self.clock()
        cause = ExitCause(cause)
        written: List[TradeLogEntry] = []
        scope = self._scope_of_position(user_id, position_id)

        with self._edit(user_id, scope) as (conn, state):
            pos = state.position(position_id)
            if not pos.is_open:
                raise StateValidationError(f"position {position_id} is already closed")

            pos.status = PositionStatus.CLOSED
            pos.exit_price = float(exit_price)
            pos.current_price = float(exit_price)
            pos.exit_timestamp = now
            pos.exit_order_id = exit_order_id
            pos.exit_reason = cause.value
            if exit_order_id:
                pos.sell_order_id = exit_order_id
            pos.recompute()
            state.execution.total_pnl = round(state.execution.total_pnl + pos.pnl, 2)

            sym = next((s for s in state.monitored_symbols if s.id == pos.symbol_id), None)
            if sym is not None:
                sym.sell_order_id = exit_order_id
                if cause in REENTRY_CAUSES and sym.re_entry_count < sym.max_re_entries:
                    self._move(sym, TriggerStatus.WAITING_REENTRY)
                    sym.re_entry_count += 1
                    self._journal(
                        conn,
                        written,
                        user_id,
                        TradeAction.RE_ENTRY_ADDED,
                        pos.buy_order_id,
                        {
                            "symbol": sym.symbol,
                            "quantity": pos.quantity,
                            "price": float(exit_price),
                            "details": {
                                "re_entry_count": sym.re_entry_count,
                                "max_re_entries": sym.max_re_entries,
                            },
                        },
                    )
                else:
                    state.monitored_symbols = [
                        s for s in state.monitored_symbols if s.id != sym.id
                    ]

        log.info(
            "position closed %s @ %s cause=%s pnl=%s", pos.symbol, exit_price, cause.value, pos.pnl
        )
        self._dispatch(written)
        return pos

    def rearm_reentry(
        self,
        user_id: str,
        symbol_id: str,
        ltp: Optional[float] = None,
        hma: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> MonitoredSymbol:
        now = now or self.clock()
        with self._edit(user_id, symbol_id) as (_, state):
            sym = state.symbol(symbol_id)
            cur_ltp = ltp if ltp is not None else sym.current_ltp
            cur_hma = hma if hma is not None else sym.hma_value
            status, pending = _initial_phase(cur_ltp, cur_hma, now)
            self._move(sym, status)
            _reset_order_tracking(sym)
            sym.pending_signal = pending
            if ltp is not None:
                sym.current_ltp = ltp
            if hma is not None:
                sym.last_hma_value = sym.hma_value
                sym.hma_value = hma
        log.info(
            "re-armed %s (%s/%s) phase=%s",
            sym.symbol,
            sym.re_entry_count,
            sym.max_re_entries,
            sym.trigger_status.value,
        )
        return sym

# tradewatch/monitoring/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from tradewatch.core.config import settings
from tradewatch.core.errors import NotFound
from tradewatch.persistence.db import from_iso, to_iso

MANUAL_SL_REASON = "manual stop loss update"
TRAILING_SL_REASON = "trailing stop loss update"


class TriggerStatus(str, Enum):
    WAITING_FOR_REVERSAL = "WAITING_FOR_REVERSAL"
    CONFIRMING_REVERSAL = "CONFIRMING_REVERSAL"
    WAITING_FOR_ENTRY = "WAITING_FOR_ENTRY"
    CONFIRMING_ENTRY = "CONFIRMING_ENTRY"
    TRIGGERED = "TRIGGERED"
    CONFIRMED = "CONFIRMED"
    ORDER_PLACED = "ORDER_PLACED"
    ORDER_MODIFIED = "ORDER_MODIFIED"
    ORDER_REJECTED = "ORDER_REJECTED"
    EXECUTED = "EXECUTED"
    ACTIVE_POSITION = "ACTIVE_POSITION"
    WAITING_REENTRY = "WAITING_REENTRY"
    CANCELLED = "CANCELLED"


class PositionStatus(str, Enum):
    ACTIVE = "Active"
    PENDING = "Pending"
    TARGET_HIT = "Target Hit"
    STOP_LOSS_HIT = "Stop Loss Hit"
    CLOSED = "Closed"


class Direction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class SignalKind(str, Enum):
    REVERSAL = "REVERSAL"
    ENTRY = "ENTRY"


class ExitCause(str, Enum):
    TARGET = "TARGET"
    STOP_LOSS = "STOP_LOSS"
    TIME = "TIME"
    MARKET_CLOSE = "MARKET_CLOSE"
    MANUAL = "MANUAL"


# causes that may re-arm the symbol for another entry
REENTRY_CAUSES = frozenset({ExitCause.TARGET, ExitCause.STOP_LOSS})


def _enc(v: Any) -> Any:
    if isinstance(v, Enum):
        return v.value
    if isinstance(v, datetime):
        return to_iso(v)
    return v


# =========================
# Configuration
# =========================
@dataclass
class SymbolConfig:
    lots: int = 1
    target_points: float = 0.0
    stop_loss_points: float = 0.0
    entry_method: str = "hma_crossover"
    use_trailing_stoploss: bool = False
    trailing_x: float = field(default_factory=lambda: settings.DEFAULT_TRAILING_X)
    trailing_y: float = field(default_factory=lambda: settings.DEFAULT_TRAILING_Y)
    time_based_exit: bool = False
    exit_after_minutes: int = 0
    exit_at_market_close: bool = False
    max_re_entries: int = 0
    product_type: str = "INTRADAY"
    order_type: str = "BUY_SL_LIMIT"
    index_name: Optional[str] = None
    lot_size: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: _enc(v) for k, v in self.__dict__.items()}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SymbolConfig":
        known = {k: d[k] for k in cls.__dataclass_fields__ if k in d}
        return cls(**known)


# =========================
# Signal / order tracking
# =========================
@dataclass
class PendingSignal:
    direction: SignalKind
    triggered_at: datetime
    hma_at_trigger: Optional[float] = None
    ltp_at_trigger: Optional[float] = None
    reversal_detected: bool = False
    confirmation_start_time: Optional[datetime] = None
    confirmation_end_time: Optional[datetime] = None
    reversal_confirmed: bool = False
    entry_ready_at: Optional[datetime] = None
    crossover_detected: bool = False
    crossover_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: _enc(v) for k, v in self.__dict__.items()}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PendingSignal":
        return cls(
            direction=SignalKind(d["direction"]),
            triggered_at=from_iso(d["triggered_at"]),
            hma_at_trigger=d.get("hma_at_trigger"),
            ltp_at_trigger=d.get("ltp_at_trigger"),
            reversal_detected=bool(d.get("reversal_detected", False)),
            confirmation_start_time=from_iso(d.get("confirmation_start_time")),
            confirmation_end_time=from_iso(d.get("confirmation_end_time")),
            reversal_confirmed=bool(d.get("reversal_confirmed", False)),
            entry_ready_at=from_iso(d.get("entry_ready_at")),
            crossover_detected=bool(d.get("crossover_detected", False)),
            crossover_time=from_iso(d.get("crossover_time")),
        )


@dataclass
class OrderModification:
    timestamp: datetime
    old_order_id: Optional[str]
    new_order_id: str
    old_hma: Optional[float] = None
    new_hma: Optional[float] = None
    old_limit_price: Optional[float] = None
    new_limit_price: Optional[float] = None
    reason: str = ""
    modification_type: str = "hma_update"

    def to_dict(self) -> Dict[str, Any]:
        return {k: _enc(v) for k, v in self.__dict__.items()}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "OrderModification":
        known = {k: d.get(k) for k in cls.__dataclass_fields__ if k in d}
        known["timestamp"] = from_iso(d["timestamp"])
        return cls(**known)


@dataclass
class MonitoredSymbol:
    id: str
    symbol: str
    direction: Direction
    config: SymbolConfig
    trigger_status: TriggerStatus = TriggerStatus.WAITING_FOR_REVERSAL
    added_at: Optional[datetime] = None

    # live telemetry
    current_ltp: Optional[float] = None
    hma_value: Optional[float] = None
    last_hma_value: Optional[float] = None
    last_update: Optional[datetime] = None

    # entry leg
    order_placed: bool = False
    order_placed_at: Optional[datetime] = None
    order_id: Optional[str] = None
    sell_order_id: Optional[str] = None
    order_status: Optional[str] = None
    limit_price: Optional[float] = None
    order_hma: Optional[float] = None
    last_order_modification: Optional[datetime] = None
    order_modification_count: int = 0
    order_modification_reason: Optional[str] = None
    order_modifications: List[OrderModification] = field(default_factory=list)
    status_reason: Optional[str] = None

    # protective leg
    sl_stop_price: Optional[float] = None
    sl_trigger_price: Optional[float] = None

    re_entry_count: int = 0
    pending_signal: Optional[PendingSignal] = None

    @property
    def max_re_entries(self) -> int:
        return int(self.config.max_re_entries)

    def to_dict(self) -> Dict[str, Any]:
        d = {k: _enc(v) for k, v in self.__dict__.items()}
        d["config"] = self.config.to_dict()
        d["order_modifications"] = [m.to_dict() for m in self.order_modifications]
        d["pending_signal"] = self.pending_signal.to_dict() if self.pending_signal else None
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MonitoredSymbol":
        ps = d.get("pending_signal")
        return cls(
            id=d["id"],
            symbol=d["symbol"],
            direction=Direction(d["direction"]),
            config=SymbolConfig.from_dict(d.get("config") or {}),
            trigger_status=TriggerStatus(d["trigger_status"]),
            added_at=from_iso(d.get("added_at")),
            current_ltp=d.get("current_ltp"),
            hma_value=d.get("hma_value"),
            last_hma_value=d.get("last_hma_value"),
            last_update=from_iso(d.get("last_update")),
            order_placed=bool(d.get("order_placed", False)),
            order_placed_at=from_iso(d.get("order_placed_at")),
            order_id=d.get("order_id"),
            sell_order_id=d.get("sell_order_id"),
            order_status=d.get("order_status"),
            limit_price=d.get("limit_price"),
            order_hma=d.get("order_hma"),
            last_order_modification=from_iso(d.get("last_order_modification")),
            order_modification_count=int(d.get("order_modification_count", 0)),
            order_modification_reason=d.get("order_modification_reason"),
            order_modifications=[
                OrderModification.from_dict(m) for m in d.get("order_modifications") or []
            ],
            status_reason=d.get("status_reason"),
            sl_stop_price=d.get("sl_stop_price"),
            sl_trigger_price=d.get("sl_trigger_price"),
            re_entry_count=int(d.get("re_entry_count", 0)),
            pending_signal=PendingSignal.from_dict(ps) if ps else None,
        )


# =========================
# Positions
# =========================
@dataclass
class SLModification:
    timestamp: datetime
    old_stop_loss: Optional[float]
    new_stop_loss: float
    reason: str
    order_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: _enc(v) for k, v in self.__dict__.items()}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SLModification":
        return cls(
            timestamp=from_iso(d["timestamp"]),
            old_stop_loss=d.get("old_stop_loss"),
            new_stop_loss=d["new_stop_loss"],
            reason=d.get("reason", ""),
            order_id=d.get("order_id"),
        )


@dataclass
class ActivePosition:
    id: str
    symbol_id: str
    symbol: str
    direction: Direction
    lots: int
    quantity: float
    bought_price: float
    target: float
    stop_loss: float
    initial_stop_loss: float
    opened_at: datetime
    current_price: float = 0.0
    status: PositionStatus = PositionStatus.ACTIVE

    use_trailing_stoploss: bool = False
    trailing_x: float = 0.0
    trailing_y: float = 0.0
    trail_anchor: Optional[float] = None
    time_based_exit: bool = False
    exit_after_minutes: int = 0
    exit_at_market_close: bool = False

    buy_order_id: Optional[str] = None
    sell_order_id: Optional[str] = None
    sl_order_id: Optional[str] = None
    sl_stop_price: Optional[float] = None
    sl_trigger_price: Optional[float] = None

    re_entry_count: int = 0
    pnl: float = 0.0
    pnl_percentage: float = 0.0
    invested: float = 0.0

    exit_price: Optional[float] = None
    exit_timestamp: Optional[datetime] = None
    exit_order_id: Optional[str] = None
    exit_reason: Optional[str] = None

    sl_modifications: List[SLModification] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.status != PositionStatus.CLOSED

    def recompute(self) -> None:
        """invested and PnL follow quantity, entry and mark price."""
        self.invested = float(self.quantity) * float(self.bought_price)
        mark = self.exit_price if self.exit_price is not None else self.current_price
        if not mark:
            self.pnl = 0.0
            self.pnl_percentage = 0.0
            return
        per_unit = mark - self.bought_price
        if self.direction == Direction.SELL:
            per_unit = -per_unit
        self.pnl = round(per_unit * float(self.quantity), 2)
        self.pnl_percentage = (
            round(self.pnl / self.invested * 100.0, 2) if self.invested else 0.0
        )

    def to_dict(self) -> Dict[str, Any]:
        d = {k: _enc(v) for k, v in self.__dict__.items()}
        d["sl_modifications"] = [m.to_dict() for m in self.sl_modifications]
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ActivePosition":
        raw = {k: d[k] for k in cls.__dataclass_fields__ if k in d}
        raw["direction"] = Direction(d["direction"])
        raw["status"] = PositionStatus(d.get("status", PositionStatus.ACTIVE.value))
        raw["opened_at"] = from_iso(d["opened_at"])
        raw["exit_timestamp"] = from_iso(d.get("exit_timestamp"))
        raw["sl_modifications"] = [
            SLModification.from_dict(m) for m in d.get("sl_modifications") or []
        ]
        return cls(**raw)


# =========================
# Per-user document
# =========================
@dataclass
class ExecutionCounters:
    is_monitoring: bool = False
    last_market_data_update: Optional[datetime] = None
    last_hma_update: Optional[datetime] = None
    monitoring_start_time: Optional[datetime] = None
    total_trades_executed: int = 0
    total_pnl: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {k: _enc(v) for k, v in self.__dict__.items()}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ExecutionCounters":
        return cls(
            is_monitoring=bool(d.get("is_monitoring", False)),
            last_market_data_update=from_iso(d.get("last_market_data_update")),
            last_hma_update=from_iso(d.get("last_hma_update")),
            monitoring_start_time=from_iso(d.get("monitoring_start_time")),
            total_trades_executed=int(d.get("total_trades_executed", 0)),
            total_pnl=float(d.get("total_pnl", 0.0)),
        )


@dataclass
class UserMonitoringState:
    user_id: str
    monitored_symbols: List[MonitoredSymbol] = field(default_factory=list)
    active_positions: List[ActivePosition] = field(default_factory=list)
    execution: ExecutionCounters = field(default_factory=ExecutionCounters)

    def symbol(self, symbol_id: str) -> MonitoredSymbol:
        for s in self.monitored_symbols:
            if s.id == symbol_id:
                return s
        raise NotFound(f"symbol {symbol_id} is not monitored for user {self.user_id}")

    def position(self, position_id: str) -> ActivePosition:
        for p in self.active_positions:
            if p.id == position_id:
                return p
        raise NotFound(f"position {position_id} not found for user {self.user_id}")

    def open_position_for(self, symbol_id: str) -> Optional[ActivePosition]:
        for p in self.active_positions:
            if p.symbol_id == symbol_id and p.is_open:
                return p
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "monitored_symbols": [s.to_dict() for s in self.monitored_symbols],
            "active_positions": [p.to_dict() for p in self.active_positions],
            "execution": self.execution.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "UserMonitoringState":
        return cls(
            user_id=d["user_id"],
            monitored_symbols=[
                MonitoredSymbol.from_dict(s) for s in d.get("monitored_symbols") or []
            ],
            active_positions=[
                ActivePosition.from_dict(p) for p in d.get("active_positions") or []
            ],
            execution=ExecutionCounters.from_dict(d.get("execution") or {}),
        )

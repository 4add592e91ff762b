# tradewatch/ledger/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from tradewatch.core.errors import LedgerValidationError


class TradeAction(str, Enum):
    ORDER_PLACED = "ORDER_PLACED"
    ORDER_FILLED = "ORDER_FILLED"
    ORDER_REJECTED = "ORDER_REJECTED"
    ORDER_MODIFIED = "ORDER_MODIFIED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    TARGET_HIT = "TARGET_HIT"
    STOP_LOSS_HIT = "STOP_LOSS_HIT"
    TRAILING_UPDATE = "TRAILING_UPDATE"
    RE_ENTRY_ADDED = "RE_ENTRY_ADDED"
    POSITION_CLOSED = "POSITION_CLOSED"


class EventSource(str, Enum):
    APP = "APP"
    BROKER = "BROKER"

    @classmethod
    def parse(cls, v: Any) -> "EventSource":
        s = str(getattr(v, "value", v) or "").strip().upper()
        # rows written before the rename carry the broker's name
        if s == "FYERS":
            return cls.BROKER
        try:
            return cls(s)
        except ValueError:
            raise LedgerValidationError(f"unknown event source: {v!r}") from None


class TradeStatus(str, Enum):
    PENDING = "PENDING"
    FILLED = "FILLED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    MODIFIED = "MODIFIED"
    TARGET_EXECUTED = "TARGET_EXECUTED"
    SL_EXECUTED = "SL_EXECUTED"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"


class TradeReason(str, Enum):
    ENTRY = "ENTRY"
    SL = "SL"
    TARGET = "TARGET"
    TRAILING = "TRAILING"
    STOP_LOSS = "STOP_LOSS"
    RE_ENTRY = "RE_ENTRY"
    MANUAL = "MANUAL"


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


# Kinds reconciled to one canonical row per (user, order, action).
KEYED_ACTIONS = frozenset(
    {
        TradeAction.ORDER_PLACED,
        TradeAction.ORDER_FILLED,
        TradeAction.ORDER_REJECTED,
        TradeAction.ORDER_CANCELLED,
        TradeAction.STOP_LOSS_HIT,
        TradeAction.TARGET_HIT,
        TradeAction.POSITION_CLOSED,
    }
)

# Kinds that legitimately repeat for one order (every trail step, every modify).
JOURNAL_ACTIONS = frozenset(set(TradeAction) - KEYED_ACTIONS)

SIDE_LOOKUP_ACTIONS = frozenset({TradeAction.ORDER_FILLED, TradeAction.ORDER_REJECTED})

DEFAULT_STATUS: Dict[TradeAction, TradeStatus] = {
    TradeAction.ORDER_PLACED: TradeStatus.PENDING,
    TradeAction.ORDER_FILLED: TradeStatus.FILLED,
    TradeAction.ORDER_REJECTED: TradeStatus.REJECTED,
    TradeAction.ORDER_MODIFIED: TradeStatus.MODIFIED,
    TradeAction.ORDER_CANCELLED: TradeStatus.CANCELLED,
    TradeAction.TARGET_HIT: TradeStatus.FILLED,
    TradeAction.STOP_LOSS_HIT: TradeStatus.FILLED,
    TradeAction.TRAILING_UPDATE: TradeStatus.MODIFIED,
    TradeAction.RE_ENTRY_ADDED: TradeStatus.PENDING,
    TradeAction.POSITION_CLOSED: TradeStatus.FILLED,
}

DEFAULT_REASON: Dict[TradeAction, TradeReason] = {
    TradeAction.TARGET_HIT: TradeReason.TARGET,
    TradeAction.STOP_LOSS_HIT: TradeReason.STOP_LOSS,
    TradeAction.TRAILING_UPDATE: TradeReason.TRAILING,
    TradeAction.RE_ENTRY_ADDED: TradeReason.RE_ENTRY,
    TradeAction.POSITION_CLOSED: TradeReason.MANUAL,
}

DEFAULT_ORDER_TYPE: Dict[TradeAction, str] = {
    TradeAction.STOP_LOSS_HIT: "SL-M",
    TradeAction.TARGET_HIT: "MARKET",
    TradeAction.POSITION_CLOSED: "MARKET",
}

EXIT_ACTIONS = frozenset(
    {TradeAction.TARGET_HIT, TradeAction.STOP_LOSS_HIT, TradeAction.POSITION_CLOSED}
)


# =========================
# Per-action detail payloads
# =========================
class BaseDetails(BaseModel):
    # broker metadata we do not model explicitly still survives merges
    model_config = ConfigDict(extra="allow")


class OrderPlacedDetails(BaseDetails):
    limit_price: Optional[float] = None
    trigger_price: Optional[float] = None
    hma_value: Optional[float] = None


class OrderFilledDetails(BaseDetails):
    filled_at: Optional[datetime] = None
    fill_price: Optional[float] = None
    filled_quantity: Optional[float] = None


class OrderRejectedDetails(BaseDetails):
    error_message: str = "Order rejected"
    rejected_at: Optional[datetime] = None


class OrderModifiedDetails(BaseDetails):
    old_order_id: Optional[str] = None
    new_order_id: Optional[str] = None
    old_price: Optional[float] = None
    new_price: Optional[float] = None
    modification_type: Optional[str] = None


class OrderCancelledDetails(BaseDetails):
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None


class ExitDetails(BaseDetails):
    entry_price: Optional[float] = None
    exit_price: Optional[float] = None
    stop_loss_price: Optional[float] = None
    target_price: Optional[float] = None
    pnl: Optional[float] = None


class TrailingUpdateDetails(BaseDetails):
    old_stop_loss: Optional[float] = None
    new_stop_loss: Optional[float] = None
    trail_anchor: Optional[float] = None


class ReEntryDetails(BaseDetails):
    re_entry_count: Optional[int] = Field(default=None, ge=0)
    max_re_entries: Optional[int] = Field(default=None, ge=0)


DETAILS_MODELS: Dict[TradeAction, Type[BaseDetails]] = {
    TradeAction.ORDER_PLACED: OrderPlacedDetails,
    TradeAction.ORDER_FILLED: OrderFilledDetails,
    TradeAction.ORDER_REJECTED: OrderRejectedDetails,
    TradeAction.ORDER_MODIFIED: OrderModifiedDetails,
    TradeAction.ORDER_CANCELLED: OrderCancelledDetails,
    TradeAction.TARGET_HIT: ExitDetails,
    TradeAction.STOP_LOSS_HIT: ExitDetails,
    TradeAction.POSITION_CLOSED: ExitDetails,
    TradeAction.TRAILING_UPDATE: TrailingUpdateDetails,
    TradeAction.RE_ENTRY_ADDED: ReEntryDetails,
}

# internal keys the ledger owns inside the details bag
RESERVED_DETAIL_KEYS = ("source", "side_inferred")


class EventPayload(BaseModel):
    """Order metadata carried by one APP or BROKER observation."""

    model_config = ConfigDict(extra="forbid")

    symbol: str = Field(min_length=1)
    side: Optional[Side] = None
    quantity: float = Field(default=0.0, ge=0)
    price: float = Field(default=0.0, ge=0)
    order_type: Optional[str] = None
    product_type: Optional[str] = None
    status: Optional[TradeStatus] = None
    reason: Optional[TradeReason] = None
    pnl: Optional[float] = None
    pnl_percentage: Optional[float] = None
    remarks: Optional[str] = None
    broker_status: Optional[str] = None
    timestamp: Optional[datetime] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("symbol")
    @classmethod
    def _strip_symbol(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("symbol must not be blank")
        return v


def parse_action(v: Any) -> TradeAction:
    try:
        return TradeAction(str(getattr(v, "value", v)).strip().upper())
    except ValueError:
        raise LedgerValidationError(f"unknown trade action: {v!r}") from None


def parse_payload(
    action: TradeAction, payload: "EventPayload | Mapping[str, Any]"
) -> tuple[EventPayload, BaseDetails]:
    """
    Validate top-level order metadata and the action's typed details.
    Raises LedgerValidationError; nothing has been written at that point.
    """
    try:
        if isinstance(payload, EventPayload):
            ev = payload
        else:
            ev = EventPayload.model_validate(dict(payload))
        raw = {k: v for k, v in ev.details.items() if k not in RESERVED_DETAIL_KEYS}
        details = DETAILS_MODELS[action].model_validate(raw)
    except ValidationError as e:
        raise LedgerValidationError(f"invalid {action.value} payload: {e}") from e
    return ev, details


def merge_details(
    action: TradeAction,
    existing: Dict[str, Any],
    incoming: BaseDetails,
    drop: Tuple[str, ...] = (),
) -> Dict[str, Any]:
    """
    Incoming explicitly-set fields win; result is re-validated for the action.
    Reserved keys named in `drop` are not carried over from `existing`.
    """
    base = {k: v for k, v in existing.items() if k not in RESERVED_DETAIL_KEYS}
    try:
        current = DETAILS_MODELS[action].model_validate(base)
        merged = current.model_copy(update=incoming.model_dump(exclude_unset=True))
        # model_copy skips validation; re-check the combined payload
        merged = DETAILS_MODELS[action].model_validate(merged.model_dump())
    except ValidationError as e:
        raise LedgerValidationError(f"cannot merge {action.value} details: {e}") from e
    out = merged.model_dump(mode="json", exclude_none=True)
    for k in RESERVED_DETAIL_KEYS:
        if k in existing and k not in drop:
            out[k] = existing[k]
    return out


# =========================
# Ledger row
# =========================
@dataclass
class TradeLogEntry:
    id: str
    user_id: str
    symbol: str
    action: TradeAction
    order_type: str
    quantity: float
    price: float
    status: TradeStatus
    source: EventSource
    timestamp: datetime
    side: Optional[Side] = None
    product_type: Optional[str] = None
    order_id: Optional[str] = None
    reason: Optional[TradeReason] = None
    pnl: float = 0.0
    pnl_percentage: float = 0.0
    remarks: str = ""
    broker_status: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None
    canonical_key: Optional[str] = None

    @property
    def group_key(self) -> tuple[Optional[str], str]:
        return (self.order_id, self.action.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "symbol": self.symbol,
            "action": self.action.value,
            "orderType": self.order_type,
            "quantity": self.quantity,
            "price": self.price,
            "side": self.side.value if self.side else None,
            "productType": self.product_type,
            "orderId": self.order_id,
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "timestamp": self.timestamp.isoformat(),
            "details": dict(self.details, source=self.source.value),
            "pnl": self.pnl,
            "pnlPercentage": self.pnl_percentage,
            "remarks": self.remarks,
            "brokerStatus": self.broker_status,
        }


def canonical_key(user_id: str, order_id: str, action: TradeAction) -> str:
    return f"{user_id}|{order_id}|{action.value}"

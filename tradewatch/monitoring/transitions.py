# tradewatch/monitoring/transitions.py
from __future__ import annotations

from typing import Dict, FrozenSet, Optional

from tradewatch.core.errors import IllegalTransition
from tradewatch.monitoring.models import TriggerStatus as T

# None marks a freshly added symbol
INITIAL = None

SIGNAL_PHASES = frozenset(
    {
        T.WAITING_FOR_REVERSAL,
        T.CONFIRMING_REVERSAL,
        T.WAITING_FOR_ENTRY,
        T.CONFIRMING_ENTRY,
        T.TRIGGERED,
        T.CONFIRMED,
    }
)

TERMINAL = frozenset({T.CANCELLED})

# target -> allowed predecessors
ALLOWED: Dict[T, FrozenSet[Optional[T]]] = {
    T.WAITING_FOR_REVERSAL: frozenset({INITIAL, T.CONFIRMING_REVERSAL, T.WAITING_REENTRY}),
    T.CONFIRMING_REVERSAL: frozenset({T.WAITING_FOR_REVERSAL}),
    T.WAITING_FOR_ENTRY: frozenset(
        {
            INITIAL,
            T.CONFIRMING_REVERSAL,
            T.CONFIRMING_ENTRY,
            T.ORDER_REJECTED,
            T.WAITING_REENTRY,
        }
    ),
    T.CONFIRMING_ENTRY: frozenset({T.WAITING_FOR_ENTRY}),
    T.TRIGGERED: frozenset({T.WAITING_FOR_ENTRY, T.CONFIRMING_ENTRY}),
    T.CONFIRMED: frozenset({T.TRIGGERED, T.CONFIRMING_ENTRY}),
    T.ORDER_PLACED: frozenset({T.CONFIRMING_ENTRY, T.TRIGGERED, T.CONFIRMED}),
    T.ORDER_MODIFIED: frozenset({T.ORDER_PLACED, T.ORDER_MODIFIED}),
    T.ORDER_REJECTED: frozenset({T.ORDER_PLACED, T.ORDER_MODIFIED}),
    T.EXECUTED: frozenset({T.ORDER_PLACED, T.ORDER_MODIFIED}),
    T.ACTIVE_POSITION: frozenset({T.EXECUTED}),
    T.WAITING_REENTRY: frozenset({T.ACTIVE_POSITION}),
    T.CANCELLED: frozenset(
        {
            T.WAITING_FOR_REVERSAL,
            T.CONFIRMING_REVERSAL,
            T.WAITING_FOR_ENTRY,
            T.CONFIRMING_ENTRY,
            T.TRIGGERED,
            T.CONFIRMED,
            T.ORDER_PLACED,
            T.ORDER_MODIFIED,
            T.ORDER_REJECTED,
            T.WAITING_REENTRY,
        }
    ),
}


def can_transition(current: Optional[T], target: T) -> bool:
    return current in ALLOWED.get(target, frozenset())


def check_transition(symbol_id: str, current: Optional[T], target: T) -> None:
    if not can_transition(current, target):
        cur = current.value if current is not None else "INITIAL"
        raise IllegalTransition(symbol_id, cur, target.value)

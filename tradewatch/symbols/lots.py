# tradewatch/symbols/lots.py
from __future__ import annotations

from typing import Dict, Optional


def underlying_of(symbol: str) -> str:
    """'NSE:NIFTY25000CE' -> 'NIFTY25000CE'"""
    s = symbol.strip().upper()
    if ":" in s:
        s = s.split(":", 1)[1]
    return s


def lot_size_for(
    symbol: str,
    lot_map: Dict[str, int],
    default_lot: int,
    index_name: Optional[str] = None,
) -> int:
    """
    Exact index name first, then the longest matching prefix of the contract
    symbol (so BANKNIFTY contracts never resolve to NIFTY).
    """
    if index_name:
        key = index_name.strip().upper()
        if key in lot_map:
            return int(lot_map[key])

    sym = underlying_of(symbol)
    best: Optional[str] = None
    for name in lot_map:
        if sym.startswith(name) and (best is None or len(name) > len(best)):
            best = name
    if best is not None:
        return int(lot_map[best])
    return int(default_lot)

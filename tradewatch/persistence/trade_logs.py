# tradewatch/persistence/trade_logs.py
from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from typing import Iterable, List, Optional

from tradewatch.ledger.models import (
    EventSource,
    Side,
    TradeAction,
    TradeLogEntry,
    TradeReason,
    TradeStatus,
)
from tradewatch.persistence.db import DB, from_iso, to_iso

_COLUMNS = (
    "id, user_id, symbol, action, order_type, quantity, price, side, product_type, "
    "order_id, status, reason, pnl, pnl_percentage, remarks, broker_status, source, "
    "details_json, canonical_key, timestamp_utc, updated_at"
)


def row_to_entry(r: sqlite3.Row) -> TradeLogEntry:
    details = json.loads(r["details_json"] or "{}")
    details.pop("source", None)
    return TradeLogEntry(
        id=r["id"],
        user_id=r["user_id"],
        symbol=r["symbol"],
        action=TradeAction(r["action"]),
        order_type=r["order_type"],
        quantity=float(r["quantity"]),
        price=float(r["price"]),
        side=Side(r["side"]) if r["side"] else None,
        product_type=r["product_type"],
        order_id=r["order_id"],
        status=TradeStatus(r["status"]),
        reason=TradeReason(r["reason"]) if r["reason"] else None,
        pnl=float(r["pnl"] or 0.0),
        pnl_percentage=float(r["pnl_percentage"] or 0.0),
        remarks=r["remarks"] or "",
        broker_status=r["broker_status"],
        source=EventSource.parse(r["source"]),
        details=details,
        timestamp=from_iso(r["timestamp_utc"]),
        updated_at=from_iso(r["updated_at"]),
        canonical_key=r["canonical_key"],
    )


def _details_json(entry: TradeLogEntry) -> str:
    return json.dumps(
        dict(entry.details, source=entry.source.value), ensure_ascii=False, default=str
    )


class TradeLogRepository:
    """
    Row-level access to the trade_logs table.
    Methods taking `conn` run inside the caller's transaction.
    """

    def __init__(self, db: DB):
        self.db = db

    # ---------- inside a transaction ----------
    def find_by_key(self, conn: sqlite3.Connection, key: str) -> Optional[TradeLogEntry]:
        row = conn.execute(
            f"SELECT {_COLUMNS} FROM trade_logs WHERE canonical_key = ?", (key,)
        ).fetchone()
        return row_to_entry(row) if row else None

    def get_in(self, conn: sqlite3.Connection, entry_id: str) -> Optional[TradeLogEntry]:
        row = conn.execute(
            f"SELECT {_COLUMNS} FROM trade_logs WHERE id = ?", (entry_id,)
        ).fetchone()
        return row_to_entry(row) if row else None

    def find_first(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        order_id: str,
        action: TradeAction,
    ) -> Optional[TradeLogEntry]:
        """
        Oldest row for (user, order, action), BROKER rows first.
        Covers legacy rows written before canonical keys existed.
        """
        row = conn.execute(
            f"""
            SELECT {_COLUMNS} FROM trade_logs
            WHERE user_id = ? AND order_id = ? AND action = ?
            ORDER BY CASE WHEN source IN ('BROKER','FYERS') THEN 0 ELSE 1 END,
                     timestamp_utc ASC
            LIMIT 1
            """,
            (user_id, order_id, action.value),
        ).fetchone()
        return row_to_entry(row) if row else None

    def insert(
        self, conn: sqlite3.Connection, entry: TradeLogEntry, key: Optional[str]
    ) -> bool:
        """
        Returns False when another writer already owns the canonical key.
        """
        cur = conn.execute(
            f"""
            INSERT INTO trade_logs ({_COLUMNS})
            VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
            ON CONFLICT(canonical_key) WHERE canonical_key IS NOT NULL DO NOTHING
            """,
            (
                entry.id,
                entry.user_id,
                entry.symbol,
                entry.action.value,
                entry.order_type,
                float(entry.quantity),
                float(entry.price),
                entry.side.value if entry.side else None,
                entry.product_type,
                entry.order_id,
                entry.status.value,
                entry.reason.value if entry.reason else None,
                float(entry.pnl),
                float(entry.pnl_percentage),
                entry.remarks or "",
                entry.broker_status,
                entry.source.value,
                _details_json(entry),
                key,
                to_iso(entry.timestamp),
                to_iso(entry.updated_at or entry.timestamp),
            ),
        )
        return cur.rowcount == 1

    def upgrade(
        self,
        conn: sqlite3.Connection,
        entry: TradeLogEntry,
        expected_source: EventSource,
    ) -> bool:
        """
        Compare-and-swap on the stored source tag. id and timestamp are never touched.
        """
        cur = conn.execute(
            """
            UPDATE trade_logs SET
                symbol = ?, order_type = ?, quantity = ?, price = ?, side = ?,
                product_type = ?, status = ?, reason = ?, pnl = ?, pnl_percentage = ?,
                remarks = ?, broker_status = ?, source = ?, details_json = ?, updated_at = ?
            WHERE id = ? AND source = ?
            """,
            (
                entry.symbol,
                entry.order_type,
                float(entry.quantity),
                float(entry.price),
                entry.side.value if entry.side else None,
                entry.product_type,
                entry.status.value,
                entry.reason.value if entry.reason else None,
                float(entry.pnl),
                float(entry.pnl_percentage),
                entry.remarks or "",
                entry.broker_status,
                entry.source.value,
                _details_json(entry),
                to_iso(entry.updated_at),
                entry.id,
                expected_source.value,
            ),
        )
        return cur.rowcount == 1

    # ---------- standalone reads ----------
    def get(self, entry_id: str) -> Optional[TradeLogEntry]:
        with self.db.connect() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM trade_logs WHERE id = ?", (entry_id,)
            ).fetchone()
        return row_to_entry(row) if row else None

    def list_between(
        self, user_id: str, start: datetime, end: Optional[datetime] = None
    ) -> List[TradeLogEntry]:
        sql = f"SELECT {_COLUMNS} FROM trade_logs WHERE user_id = ? AND timestamp_utc >= ?"
        params: list = [user_id, to_iso(start)]
        if end is not None:
            sql += " AND timestamp_utc < ?"
            params.append(to_iso(end))
        sql += " ORDER BY timestamp_utc DESC"
        with self.db.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [row_to_entry(r) for r in rows]

    def list_for_user(self, user_id: str) -> List[TradeLogEntry]:
        with self.db.connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM trade_logs WHERE user_id = ? ORDER BY timestamp_utc DESC",
                (user_id,),
            ).fetchall()
        return [row_to_entry(r) for r in rows]

    def duplicate_groups(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        actions: Iterable[TradeAction],
    ) -> List[List[TradeLogEntry]]:
        """
        Every (order_id, action) group with more than one row.
        Rows inside a group are ordered oldest first.
        """
        acts = [a.value for a in actions]
        marks = ",".join("?" for _ in acts)
        keys = conn.execute(
            f"""
            SELECT order_id, action, COUNT(*) AS cnt
            FROM trade_logs
            WHERE user_id = ? AND order_id IS NOT NULL AND action IN ({marks})
            GROUP BY order_id, action
            HAVING COUNT(*) > 1
            """,
            (user_id, *acts),
        ).fetchall()

        groups: List[List[TradeLogEntry]] = []
        for k in keys:
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS} FROM trade_logs
                WHERE user_id = ? AND order_id = ? AND action = ?
                ORDER BY timestamp_utc ASC, id ASC
                """,
                (user_id, k["order_id"], k["action"]),
            ).fetchall()
            groups.append([row_to_entry(r) for r in rows])
        return groups

    def assign_key(self, conn: sqlite3.Connection, entry_id: str, key: str) -> None:
        conn.execute(
            "UPDATE trade_logs SET canonical_key = ? WHERE id = ?", (key, entry_id)
        )

    def delete_ids(self, conn: sqlite3.Connection, ids: List[str]) -> int:
        if not ids:
            return 0
        marks = ",".join("?" for _ in ids)
        cur = conn.execute(f"DELETE FROM trade_logs WHERE id IN ({marks})", ids)
        return int(cur.rowcount or 0)

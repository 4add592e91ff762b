# tradewatch/notify/sink.py
from __future__ import annotations

import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, List, Protocol, Set

from tradewatch.ledger.models import TradeLogEntry
from tradewatch.persistence.db import DB, utc_now_iso

log = logging.getLogger("tradewatch.notify")


@dataclass
class Notification:
    type: str  # info | success | warning | error | trade
    title: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "data": self.data,
        }


class NotificationSink(Protocol):
    def send(self, user_id: str, notification: Dict[str, Any]) -> None: ...


class RealtimePush(Protocol):
    def push(self, user_id: str, entry: Dict[str, Any]) -> None: ...


class DBNotificationSink:
    """Stores notifications for the UI to poll."""

    def __init__(self, db: DB):
        self.db = db

    def send(self, user_id: str, notification: Dict[str, Any]) -> None:
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO notifications(user_id, type, title, message, data_json, read, created_at)
                VALUES (?,?,?,?,?,0,?)
                """,
                (
                    user_id,
                    notification.get("type", "info"),
                    notification["title"],
                    notification["message"],
                    json.dumps(notification.get("data") or {}, ensure_ascii=False),
                    utc_now_iso(),
                ),
            )

    def list_for_user(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM notifications WHERE user_id = ?
                ORDER BY created_at DESC, id DESC LIMIT ?
                """,
                (user_id, int(limit)),
            ).fetchall()
        out = []
        for r in rows:
            d = dict(r)
            d["data"] = json.loads(d.pop("data_json") or "{}")
            d["read"] = bool(d["read"])
            out.append(d)
        return out


class LoggingPush:
    """Realtime channel stand-in: one log line per canonical ledger write."""

    def push(self, user_id: str, entry: Dict[str, Any]) -> None:
        log.info(
            "push user=%s %s %s order=%s source=%s",
            user_id,
            entry.get("action"),
            entry.get("symbol"),
            entry.get("orderId"),
            (entry.get("details") or {}).get("source"),
        )


class Notifier:
    """
    Fire-and-forget dispatch of sink + push side effects.
    Failures are logged and never reach the ledger write path.
    """

    def __init__(self, sink: NotificationSink, push: RealtimePush, workers: int = 2):
        self.sink = sink
        self.push = push
        self._pool = ThreadPoolExecutor(
            max_workers=max(1, int(workers)), thread_name_prefix="notify"
        )
        self._pending: Set[Future] = set()
        self._lock = Lock()

    def dispatch(self, entry: TradeLogEntry, notification: Notification) -> None:
        payload = entry.to_dict()
        self._submit(self._send, entry.user_id, notification.as_dict())
        self._submit(self._push, entry.user_id, payload)

    def _submit(self, fn, *args) -> None:
        fut = self._pool.submit(fn, *args)
        with self._lock:
            self._pending.add(fut)
        fut.add_done_callback(self._discard)

    def _discard(self, fut: Future) -> None:
        with self._lock:
            self._pending.discard(fut)

    def _send(self, user_id: str, notification: Dict[str, Any]) -> None:
        try:
            self.sink.send(user_id, notification)
        except Exception:
            log.exception("notification sink failed for user %s", user_id)

    def _push(self, user_id: str, payload: Dict[str, Any]) -> None:
        try:
            self.push.push(user_id, payload)
        except Exception:
            log.exception("realtime push failed for user %s", user_id)

    def flush(self, timeout: float = 5.0) -> None:
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def close(self) -> None:
        self._pool.shutdown(wait=True)


def notification_for(entry: TradeLogEntry) -> Notification:
    """Notification text per ledger action."""
    sym = entry.symbol
    side = entry.side.value if entry.side else ""
    qty = entry.quantity
    price = entry.price
    action = entry.action.value
    data = {
        "symbol": sym,
        "action": action,
        "quantity": qty,
        "price": price,
        "orderId": entry.order_id,
        "source": entry.source.value,
    }

    if action == "ORDER_PLACED":
        return Notification(
            "info", f"Order Placed: {sym}", f"{side} order for {qty} {sym} @ ₹{price} placed", data
        )
    if action == "ORDER_FILLED":
        return Notification(
            "success", f"Order Filled: {sym}", f"{side} order for {qty} {sym} @ ₹{price} filled", data
        )
    if action == "ORDER_REJECTED":
        err = entry.details.get("error_message", "Order rejected")
        data["errorMessage"] = err
        return Notification(
            "error", f"Order Rejected: {sym}", f"{sym} order was rejected: {err}", data
        )
    if action == "ORDER_CANCELLED":
        return Notification("warning", f"Order Cancelled: {sym}", f"{sym} order {entry.order_id} cancelled", data)
    if action == "ORDER_MODIFIED":
        return Notification("info", f"Order Modified: {sym}", f"{sym} order modified @ ₹{price}", data)
    if action == "STOP_LOSS_HIT":
        data["pnl"] = entry.pnl
        return Notification(
            "warning", f"Stop Loss Hit: {sym}", f"Stop loss hit for {sym} @ ₹{price}, PnL: ₹{entry.pnl}", data
        )
    if action == "TARGET_HIT":
        data["pnl"] = entry.pnl
        return Notification(
            "success", f"Target Hit: {sym}", f"Target hit for {sym} @ ₹{price}, PnL: ₹{entry.pnl}", data
        )
    if action == "TRAILING_UPDATE":
        new_sl = entry.details.get("new_stop_loss")
        return Notification("info", f"Trailing Stop Updated: {sym}", f"Stop loss for {sym} moved to ₹{new_sl}", data)
    if action == "RE_ENTRY_ADDED":
        return Notification("info", f"Re-entry Armed: {sym}", f"{sym} re-armed for another entry", data)
    # POSITION_CLOSED
    data["pnl"] = entry.pnl
    return Notification(
        "trade", f"Position Closed: {sym}", f"{sym} closed @ ₹{price}, PnL: ₹{entry.pnl}", data
    )

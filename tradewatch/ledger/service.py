# tradewatch/ledger/service.py
from __future__ import annotations

import dataclasses
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from tradewatch.core.config import settings
from tradewatch.core.errors import LedgerValidationError
from tradewatch.ledger.models import (
    DEFAULT_ORDER_TYPE,
    DEFAULT_REASON,
    DEFAULT_STATUS,
    EXIT_ACTIONS,
    KEYED_ACTIONS,
    SIDE_LOOKUP_ACTIONS,
    BaseDetails,
    EventPayload,
    EventSource,
    Side,
    TradeAction,
    TradeLogEntry,
    canonical_key,
    merge_details,
    parse_action,
    parse_payload,
)
from tradewatch.notify.sink import Notifier, notification_for
from tradewatch.persistence.db import DB, utc_now
from tradewatch.persistence.trade_logs import TradeLogRepository

log = logging.getLogger("tradewatch.ledger")

# top-level fields a BROKER upgrade may overwrite
_MERGEABLE_FIELDS = (
    "symbol",
    "side",
    "quantity",
    "price",
    "order_type",
    "product_type",
    "status",
    "reason",
    "pnl",
    "pnl_percentage",
    "remarks",
    "broker_status",
)


@dataclass(frozen=True)
class CleanupResult:
    processed: int
    deleted: int


@dataclass(frozen=True)
class _Event:
    user_id: str
    action: TradeAction
    order_id: Optional[str]
    source: EventSource
    body: EventPayload
    details: BaseDetails
    keyed: bool
    manual_exit: bool


def prioritize_entries(entries: Iterable[TradeLogEntry]) -> List[TradeLogEntry]:
    """
    One entry per (order_id, action) for the reconciled kinds, BROKER preferred,
    first seen otherwise. Journal kinds and rows without an order id pass through.
    Newest first. Does not mutate its input.
    """
    chosen: Dict[Tuple[Optional[str], str], TradeLogEntry] = {}
    passthrough: List[TradeLogEntry] = []

    for e in entries:
        if not e.order_id or e.action not in KEYED_ACTIONS:
            passthrough.append(e)
            continue
        cur = chosen.get(e.group_key)
        if cur is None:
            chosen[e.group_key] = e
        elif cur.source != EventSource.BROKER and e.source == EventSource.BROKER:
            chosen[e.group_key] = e

    out = list(chosen.values()) + passthrough
    out.sort(key=lambda e: e.timestamp, reverse=True)
    return out


def _pick_keeper(rows: List[TradeLogEntry]) -> TradeLogEntry:
    # rows arrive oldest first; the caller moves an orphaned key onto the keeper
    broker = [r for r in rows if r.source == EventSource.BROKER]
    return (broker or rows)[0]


class EventLedger:
    """
    Dual-source trade ledger.

    APP (local engine) and BROKER (order updates) observations of the same
    order event collapse into one canonical row per (user, order, action).
    A BROKER observation upgrades an APP row in place; everything else that
    hits an existing row is discarded and the existing row is returned.
    """

    def __init__(
        self,
        db: DB,
        notifier: Optional[Notifier] = None,
        policy: Optional[str] = None,
    ):
        self.db = db
        self.repo = TradeLogRepository(db)
        self.notifier = notifier
        self.policy = (policy or settings.LEDGER_POLICY).lower()

    # =========================
    # Writes
    # =========================
    def record_event(
        self,
        user_id: str,
        action: Any,
        order_id: Optional[str],
        source: Any,
        payload: "EventPayload | Mapping[str, Any]",
    ) -> Optional[TradeLogEntry]:
        """
        Record one observation. Returns the canonical entry for the key (new,
        upgraded or pre-existing), or None when the policy suppressed it.
        """
        ev = self._validate(user_id, action, order_id, source, payload)
        with self.db.transaction() as conn:
            result, written = self._apply(conn, ev)
        if written is not None:
            self.dispatch(written)
        return result

    def record_in(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        action: Any,
        order_id: Optional[str],
        source: Any,
        payload: "EventPayload | Mapping[str, Any]",
    ) -> Tuple[Optional[TradeLogEntry], Optional[TradeLogEntry]]:
        """
        Same as record_event but inside the caller's transaction.
        Returns (result, written); the caller dispatches `written` after commit.
        """
        ev = self._validate(user_id, action, order_id, source, payload)
        return self._apply(conn, ev)

    def dispatch(self, entry: TradeLogEntry) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.dispatch(entry, notification_for(entry))
        except Exception:
            log.exception("failed to dispatch notification for %s", entry.id)

    def _validate(
        self,
        user_id: str,
        action: Any,
        order_id: Optional[str],
        source: Any,
        payload: "EventPayload | Mapping[str, Any]",
    ) -> _Event:
        act = parse_action(action)
        src = EventSource.parse(source)
        if payload is None:
            raise LedgerValidationError(f"{act.value}: payload is required")
        body, details = parse_payload(act, payload)

        uid = str(user_id or "").strip()
        if not uid:
            raise LedgerValidationError("user_id is required")
        oid = str(order_id).strip() if order_id is not None else ""

        manual_exit = act == TradeAction.POSITION_CLOSED and src == EventSource.APP
        keyed = act in KEYED_ACTIONS and not manual_exit
        if keyed and not oid:
            raise LedgerValidationError(f"{act.value} requires an order id")

        return _Event(
            user_id=uid,
            action=act,
            order_id=oid or None,
            source=src,
            body=body,
            details=details,
            keyed=keyed,
            manual_exit=manual_exit,
        )

    def _apply(
        self, conn: sqlite3.Connection, ev: _Event
    ) -> Tuple[Optional[TradeLogEntry], Optional[TradeLogEntry]]:
        suppress_app = (
            self.policy == "broker_only"
            and ev.source == EventSource.APP
            and not ev.manual_exit
        )

        if not ev.keyed:
            if suppress_app:
                log.info("skip %s %s from APP (broker_only)", ev.action.value, ev.body.symbol)
                return None, None
            entry = self._build(conn, ev)
            self.repo.insert(conn, entry, None)
            return entry, entry

        key = canonical_key(ev.user_id, ev.order_id, ev.action)
        existing = self._find_existing(conn, ev.user_id, ev.order_id, ev.action, key)

        if existing is None:
            if suppress_app:
                log.info(
                    "skip %s order=%s from APP (broker_only)", ev.action.value, ev.order_id
                )
                return None, None
            entry = self._build(conn, ev)
            if self.repo.insert(conn, entry, key):
                return entry, entry
            # another writer owns the key
            existing = self.repo.find_by_key(conn, key)
            if existing is None:
                raise LedgerValidationError(f"lost canonical key {key} during insert")

        return self._reconcile(conn, existing, ev)

    def _find_existing(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        order_id: str,
        action: TradeAction,
        key: str,
    ) -> Optional[TradeLogEntry]:
        found = self.repo.find_by_key(conn, key)
        if found is None:
            # rows written before canonical keys existed
            found = self.repo.find_first(conn, user_id, order_id, action)
        return found

    def _reconcile(
        self, conn: sqlite3.Connection, existing: TradeLogEntry, ev: _Event
    ) -> Tuple[TradeLogEntry, Optional[TradeLogEntry]]:
        """Returns (entry for the caller, entry that was written or None)."""
        src = ev.source
        if existing.source == EventSource.APP and src == EventSource.BROKER:
            upgraded = self._merge(existing, ev)
            if self.repo.upgrade(conn, upgraded, expected_source=EventSource.APP):
                log.info(
                    "upgraded %s order=%s APP -> BROKER (id=%s)",
                    existing.action.value,
                    existing.order_id,
                    existing.id,
                )
                return upgraded, upgraded
            fresh = self.repo.get_in(conn, existing.id) or existing
            return fresh, None

        if existing.source == EventSource.BROKER and src == EventSource.APP:
            log.info(
                "discard APP %s order=%s: BROKER entry already recorded",
                existing.action.value,
                existing.order_id,
            )
        else:
            log.info(
                "duplicate %s %s order=%s ignored",
                src.value,
                existing.action.value,
                existing.order_id,
            )
        return existing, None

    def _merge(self, existing: TradeLogEntry, ev: _Event) -> TradeLogEntry:
        updates: Dict[str, Any] = {}
        for name in _MERGEABLE_FIELDS:
            if name not in ev.body.model_fields_set:
                continue
            val = getattr(ev.body, name)
            if val is None or val == "":
                continue
            updates[name] = val

        return dataclasses.replace(
            existing,
            **updates,
            source=EventSource.BROKER,
            details=merge_details(
                existing.action,
                existing.details,
                ev.details,
                # a broker-reported side replaces the BUY default
                drop=("side_inferred",) if "side" in updates else (),
            ),
            updated_at=utc_now(),
        )

    def _build(self, conn: sqlite3.Connection, ev: _Event) -> TradeLogEntry:
        act, body = ev.action, ev.body
        stored = ev.details.model_dump(mode="json", exclude_none=True)
        side = self._resolve_side(conn, ev, stored)

        pnl = body.pnl
        if pnl is None and act in EXIT_ACTIONS:
            pnl = stored.get("pnl")

        now = utc_now()
        return TradeLogEntry(
            id=str(uuid.uuid4()),
            user_id=ev.user_id,
            symbol=body.symbol,
            action=act,
            order_type=body.order_type or DEFAULT_ORDER_TYPE.get(act, "LIMIT"),
            quantity=float(body.quantity),
            price=float(body.price),
            side=side,
            product_type=body.product_type,
            order_id=ev.order_id,
            status=body.status or DEFAULT_STATUS[act],
            reason=body.reason or DEFAULT_REASON.get(act),
            pnl=float(pnl or 0.0),
            pnl_percentage=float(body.pnl_percentage or 0.0),
            remarks=body.remarks or "",
            broker_status=body.broker_status,
            source=ev.source,
            details=stored,
            timestamp=body.timestamp or now,
            updated_at=now,
        )

    def _resolve_side(
        self, conn: sqlite3.Connection, ev: _Event, stored: Dict[str, Any]
    ) -> Optional[Side]:
        act, body = ev.action, ev.body
        if act in SIDE_LOOKUP_ACTIONS:
            placed = self.repo.find_first(
                conn, ev.user_id, ev.order_id, TradeAction.ORDER_PLACED
            )
            if placed is not None and placed.side is not None:
                return placed.side
            if body.side is not None:
                return body.side
            log.warning(
                "no side for %s order=%s (%s); defaulting to BUY",
                act.value,
                ev.order_id,
                body.symbol,
            )
            stored["side_inferred"] = True
            return Side.BUY

        if act in EXIT_ACTIONS:
            return body.side or Side.SELL
        return body.side

    # =========================
    # Reads
    # =========================
    def list_for_day(self, user_id: str, day: Optional[date] = None) -> List[TradeLogEntry]:
        """Entries whose timestamp falls on `day` (UTC)."""
        day = day or utc_now().date()
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1)
        return prioritize_entries(self.repo.list_between(user_id, start, end))

    def list_recent(self, user_id: str, days: Optional[int] = None) -> List[TradeLogEntry]:
        days = int(days or settings.LEDGER_RECENT_DAYS)
        start = utc_now() - timedelta(days=days)
        return prioritize_entries(self.repo.list_between(user_id, start))

    def list_all(self, user_id: str) -> List[TradeLogEntry]:
        return prioritize_entries(self.repo.list_for_user(user_id))

    def get_entry(
        self, user_id: str, order_id: str, action: Any
    ) -> Optional[TradeLogEntry]:
        act = parse_action(action)
        with self.db.connect() as conn:
            return self.repo.find_first(conn, user_id, order_id, act)

    # =========================
    # Maintenance
    # =========================
    def cleanup_duplicate_logs(self, user_id: str) -> CleanupResult:
        """
        Collapse duplicate (order_id, action) groups left behind by older writers.
        Keeps the BROKER row (else the oldest) and deletes the rest.
        """
        processed = 0
        deleted = 0
        with self.db.transaction() as conn:
            for rows in self.repo.duplicate_groups(conn, user_id, KEYED_ACTIONS):
                processed += 1
                keeper = _pick_keeper(rows)
                doomed = [r for r in rows if r.id != keeper.id]
                orphan_key = next((r.canonical_key for r in doomed if r.canonical_key), None)

                deleted += self.repo.delete_ids(conn, [r.id for r in doomed])
                if orphan_key and not keeper.canonical_key:
                    self.repo.assign_key(conn, keeper.id, orphan_key)

        if processed:
            log.info(
                "cleanup user=%s groups=%s deleted=%s", user_id, processed, deleted
            )
        return CleanupResult(processed=processed, deleted=deleted)

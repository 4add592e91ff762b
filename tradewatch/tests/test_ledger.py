import threading
from datetime import date, datetime, timedelta, timezone

import pytest

from tradewatch.core.errors import LedgerValidationError
from tradewatch.ledger.models import (
    EventSource,
    Side,
    TradeAction,
    TradeLogEntry,
    TradeStatus,
    canonical_key,
)
from tradewatch.ledger.service import EventLedger, prioritize_entries

USER = "user-1"
SYM = "NSE:NIFTY25000CE"


def _placed(**overrides):
    p = {"symbol": SYM, "side": "BUY", "quantity": 75, "price": 120.5, "order_type": "SL-L"}
    p.update(overrides)
    return p


def _legacy_row(ledger, order_id, action, source, ts, key=None):
    entry = TradeLogEntry(
        id=f"legacy-{order_id}-{source.value}-{ts.isoformat()}",
        user_id=USER,
        symbol=SYM,
        action=action,
        order_type="LIMIT",
        quantity=75,
        price=100.0,
        status=TradeStatus.FILLED,
        source=source,
        timestamp=ts,
        side=Side.BUY,
        order_id=order_id,
    )
    with ledger.db.transaction() as conn:
        assert ledger.repo.insert(conn, entry, key)
    return entry


# ---------- create / upgrade / discard ----------
def test_first_observation_creates_entry(db, notifier):
    ledger = EventLedger(db, notifier)
    e = ledger.record_event(USER, "ORDER_PLACED", "O-1", "APP", _placed())

    assert e.source == EventSource.APP
    assert e.status == TradeStatus.PENDING
    assert e.side == Side.BUY
    assert len(notifier.calls) == 1
    assert notifier.calls[0][1].title == f"Order Placed: {SYM}"


def test_broker_upgrades_app_entry_in_place(db, notifier):
    ledger = EventLedger(db, notifier)
    app = ledger.record_event(
        USER, "ORDER_PLACED", "O-1", "APP", _placed(details={"hma_value": 118.2})
    )
    broker = ledger.record_event(
        USER,
        "ORDER_PLACED",
        "O-1",
        "BROKER",
        {"symbol": SYM, "price": 121.0, "broker_status": "6", "details": {"limit_price": 121.5}},
    )

    assert broker.id == app.id
    assert broker.timestamp == app.timestamp
    assert broker.source == EventSource.BROKER
    assert broker.price == 121.0
    assert broker.quantity == 75  # not sent by the broker, kept
    assert broker.details["hma_value"] == 118.2
    assert broker.details["limit_price"] == 121.5

    rows = ledger.list_all(USER)
    assert len(rows) == 1
    assert rows[0].source == EventSource.BROKER
    assert len(notifier.calls) == 2


def test_app_after_broker_is_discarded(db, notifier):
    ledger = EventLedger(db, notifier)
    broker = ledger.record_event(USER, "ORDER_FILLED", "O-1", "BROKER", _placed(price=121))
    again = ledger.record_event(USER, "ORDER_FILLED", "O-1", "APP", _placed(price=999))

    assert again.id == broker.id
    assert again.price == 121
    assert again.source == EventSource.BROKER
    assert len(ledger.list_all(USER)) == 1
    assert len(notifier.calls) == 1


def test_broker_event_is_idempotent(db, notifier):
    ledger = EventLedger(db, notifier)
    first = ledger.record_event(USER, "ORDER_FILLED", "O-1", "BROKER", _placed())
    second = ledger.record_event(USER, "ORDER_FILLED", "O-1", "BROKER", _placed())

    assert second.id == first.id
    assert len(ledger.list_all(USER)) == 1
    assert len(notifier.calls) == 1


def test_merge_is_order_independent_for_broker_fields(db, notifier):
    ledger = EventLedger(db, notifier)
    app_payload = _placed(price=120.0)
    broker_payload = {"symbol": SYM, "price": 121.0, "quantity": 75, "status": "FILLED"}

    ledger.record_event("u-a", "ORDER_FILLED", "O-9", "APP", app_payload)
    ledger.record_event("u-a", "ORDER_FILLED", "O-9", "BROKER", broker_payload)

    ledger.record_event("u-b", "ORDER_FILLED", "O-9", "BROKER", broker_payload)
    ledger.record_event("u-b", "ORDER_FILLED", "O-9", "APP", app_payload)

    (a,) = ledger.list_all("u-a")
    (b,) = ledger.list_all("u-b")
    for e in (a, b):
        assert e.source == EventSource.BROKER
        assert e.price == 121.0
        assert e.quantity == 75
        assert e.status == TradeStatus.FILLED


# ---------- scenarios from the broker integration ----------
def test_rejection_seen_twice_stores_one_entry_with_placed_side(db, notifier):
    ledger = EventLedger(db, notifier)
    ledger.record_event(USER, "ORDER_PLACED", "O-7", "APP", _placed(side="SELL"))

    ledger.record_event(
        USER,
        "ORDER_REJECTED",
        "O-7",
        "APP",
        {"symbol": SYM, "details": {"error_message": "Insufficient funds"}},
    )
    rej = ledger.record_event(
        USER,
        "ORDER_REJECTED",
        "O-7",
        "BROKER",
        {"symbol": SYM, "details": {"error_message": "RMS: margin shortfall"}},
    )

    rows = [e for e in ledger.list_all(USER) if e.action == TradeAction.ORDER_REJECTED]
    assert len(rows) == 1
    assert rej.side == Side.SELL
    assert rej.status == TradeStatus.REJECTED
    assert rej.details["error_message"] == "RMS: margin shortfall"
    assert "side_inferred" not in rej.details


def test_fill_without_placed_entry_infers_buy(db, notifier):
    ledger = EventLedger(db, notifier)
    e = ledger.record_event(USER, "ORDER_FILLED", "O-2", "BROKER", {"symbol": SYM, "price": 10})

    assert e.side == Side.BUY
    assert e.details["side_inferred"] is True
    assert e.to_dict()["details"]["side_inferred"] is True


def test_fill_uses_payload_side_when_no_placed_entry(db, notifier):
    ledger = EventLedger(db, notifier)
    e = ledger.record_event(USER, "ORDER_FILLED", "O-3", "BROKER", _placed(side="SELL"))
    assert e.side == Side.SELL
    assert "side_inferred" not in e.details


def test_broker_side_clears_inferred_flag_on_upgrade(db, notifier):
    ledger = EventLedger(db, notifier)
    app = ledger.record_event(USER, "ORDER_FILLED", "O-9", "APP", {"symbol": SYM, "price": 10})
    assert app.details["side_inferred"] is True

    up = ledger.record_event(USER, "ORDER_FILLED", "O-9", "BROKER", _placed(side="SELL"))
    assert up.id == app.id
    assert up.side == Side.SELL
    assert "side_inferred" not in up.details
    assert "side_inferred" not in ledger.get_entry(USER, "O-9", "ORDER_FILLED").details


def test_broker_upgrade_without_side_keeps_inferred_flag(db, notifier):
    ledger = EventLedger(db, notifier)
    ledger.record_event(USER, "ORDER_FILLED", "O-10", "APP", {"symbol": SYM, "price": 10})
    up = ledger.record_event(USER, "ORDER_FILLED", "O-10", "BROKER", {"symbol": SYM, "price": 11})
    assert up.source == EventSource.BROKER
    assert up.side == Side.BUY
    assert up.details["side_inferred"] is True


def test_rejection_defaults_error_message(db, notifier):
    ledger = EventLedger(db, notifier)
    e = ledger.record_event(USER, "ORDER_REJECTED", "O-4", "BROKER", {"symbol": SYM})
    assert e.details["error_message"] == "Order rejected"


def test_exit_defaults(db, notifier):
    ledger = EventLedger(db, notifier)
    e = ledger.record_event(
        USER,
        "STOP_LOSS_HIT",
        "O-5",
        "BROKER",
        {"symbol": SYM, "price": 95, "quantity": 75, "details": {"pnl": -375.0}},
    )
    assert e.side == Side.SELL
    assert e.order_type == "SL-M"
    assert e.reason.value == "STOP_LOSS"
    assert e.pnl == -375.0


# ---------- journal kinds and manual exits ----------
def test_journal_kinds_append_every_time(db, notifier):
    ledger = EventLedger(db, notifier)
    for new_sl in (101.0, 106.0):
        ledger.record_event(
            USER,
            "TRAILING_UPDATE",
            "SL-1",
            "APP",
            {"symbol": SYM, "price": new_sl + 20, "details": {"new_stop_loss": new_sl}},
        )

    rows = ledger.list_all(USER)
    assert len(rows) == 2
    assert len(notifier.calls) == 2


def test_manual_exit_bypasses_dedup(db, notifier):
    ledger = EventLedger(db, notifier)
    ledger.record_event(USER, "POSITION_CLOSED", None, "APP", {"symbol": SYM, "price": 130})
    ledger.record_event(USER, "POSITION_CLOSED", None, "APP", {"symbol": SYM, "price": 131})

    rows = ledger.list_all(USER)
    assert len(rows) == 2
    assert all(r.order_id is None for r in rows)
    assert len(notifier.calls) == 2


# ---------- validation ----------
def test_keyed_action_requires_order_id(db, notifier):
    ledger = EventLedger(db, notifier)
    with pytest.raises(LedgerValidationError):
        ledger.record_event(USER, "ORDER_FILLED", "  ", "BROKER", _placed())
    assert ledger.list_all(USER) == []
    assert notifier.calls == []


@pytest.mark.parametrize(
    "action,source,payload",
    [
        ("ORDER_TELEPORTED", "APP", _placed()),
        ("ORDER_PLACED", "EXCHANGE", _placed()),
        ("ORDER_PLACED", "APP", _placed(quantity=-1)),
        ("ORDER_PLACED", "APP", {"price": 10}),
        ("ORDER_PLACED", "APP", _placed(unexpected="x")),
        ("ORDER_PLACED", "APP", None),
    ],
)
def test_malformed_input_rejected_before_write(db, notifier, action, source, payload):
    ledger = EventLedger(db, notifier)
    with pytest.raises(LedgerValidationError):
        ledger.record_event(USER, action, "O-1", source, payload)
    assert ledger.list_all(USER) == []


def test_legacy_fyers_source_reads_as_broker(db, notifier):
    ledger = EventLedger(db, notifier)
    e = ledger.record_event(USER, "ORDER_FILLED", "O-1", "fyers", _placed())
    assert e.source == EventSource.BROKER


# ---------- policy ----------
def test_broker_only_suppresses_app_creates(db, notifier):
    ledger = EventLedger(db, notifier, policy="broker_only")
    assert ledger.record_event(USER, "ORDER_PLACED", "O-1", "APP", _placed()) is None
    assert ledger.list_all(USER) == []

    b = ledger.record_event(USER, "ORDER_PLACED", "O-1", "BROKER", _placed())
    again = ledger.record_event(USER, "ORDER_PLACED", "O-1", "APP", _placed())
    assert again.id == b.id

    closed = ledger.record_event(USER, "POSITION_CLOSED", None, "APP", {"symbol": SYM})
    assert closed is not None
    assert len(notifier.calls) == 2


# ---------- notifications ----------
def test_notifier_failure_does_not_roll_back(db, failing_notifier):
    ledger = EventLedger(db, failing_notifier)
    e = ledger.record_event(USER, "ORDER_PLACED", "O-1", "APP", _placed())
    assert ledger.repo.get(e.id) is not None
    assert len(failing_notifier.calls) == 1


# ---------- concurrency ----------
def test_concurrent_creates_yield_one_entry(db, notifier):
    ledger = EventLedger(db, notifier)
    barrier = threading.Barrier(8)
    results = []
    errors = []

    def worker(i):
        barrier.wait()
        try:
            source = "BROKER" if i % 2 else "APP"
            results.append(ledger.record_event(USER, "ORDER_FILLED", "O-RACE", source, _placed()))
        except Exception as e:  # pragma: no cover - surfaced by the assert below
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    rows = ledger.list_all(USER)
    assert len(rows) == 1
    assert rows[0].source == EventSource.BROKER
    assert len({r.id for r in results}) == 1


# ---------- reads ----------
def test_list_for_day_filters_by_utc_day(db, notifier):
    ledger = EventLedger(db, notifier)
    ledger.record_event(
        USER, "ORDER_PLACED", "O-1", "APP", _placed(timestamp="2026-01-05T09:30:00Z")
    )
    ledger.record_event(
        USER, "ORDER_PLACED", "O-2", "APP", _placed(timestamp="2026-01-06T09:30:00Z")
    )

    rows = ledger.list_for_day(USER, date(2026, 1, 5))
    assert [r.order_id for r in rows] == ["O-1"]


def test_list_recent_excludes_old_entries(db, notifier):
    ledger = EventLedger(db, notifier)
    old = datetime.now(timezone.utc) - timedelta(days=45)
    ledger.record_event(USER, "ORDER_PLACED", "O-old", "APP", _placed(timestamp=old.isoformat()))
    ledger.record_event(USER, "ORDER_PLACED", "O-new", "APP", _placed())

    assert [r.order_id for r in ledger.list_recent(USER, days=30)] == ["O-new"]
    assert len(ledger.list_all(USER)) == 2


def test_get_entry(db, notifier):
    ledger = EventLedger(db, notifier)
    ledger.record_event(USER, "ORDER_PLACED", "O-1", "APP", _placed())
    assert ledger.get_entry(USER, "O-1", "ORDER_PLACED").order_id == "O-1"
    assert ledger.get_entry(USER, "O-1", TradeAction.ORDER_FILLED) is None


def test_prioritize_entries_is_pure_and_prefers_broker():
    t0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def mk(i, order_id, action, source, minutes):
        return TradeLogEntry(
            id=f"e{i}",
            user_id=USER,
            symbol=SYM,
            action=action,
            order_type="LIMIT",
            quantity=1,
            price=1,
            status=TradeStatus.PENDING,
            source=source,
            timestamp=t0 + timedelta(minutes=minutes),
            order_id=order_id,
        )

    entries = [
        mk(1, "A", TradeAction.ORDER_PLACED, EventSource.APP, 0),
        mk(2, "A", TradeAction.ORDER_PLACED, EventSource.BROKER, 1),
        mk(3, "A", TradeAction.ORDER_PLACED, EventSource.APP, 2),
        mk(4, None, TradeAction.POSITION_CLOSED, EventSource.APP, 3),
        mk(5, "A", TradeAction.TRAILING_UPDATE, EventSource.APP, 4),
        mk(6, "A", TradeAction.TRAILING_UPDATE, EventSource.APP, 5),
        mk(7, "B", TradeAction.ORDER_FILLED, EventSource.APP, 6),
        mk(8, "B", TradeAction.ORDER_FILLED, EventSource.APP, 7),
    ]
    snapshot = list(entries)

    out = prioritize_entries(entries)

    assert entries == snapshot
    assert [e.id for e in out] == ["e7", "e6", "e5", "e4", "e2"]


# ---------- cleanup ----------
def test_cleanup_keeps_broker_row_and_reaches_fixed_point(db, notifier):
    ledger = EventLedger(db, notifier)
    t0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
    key = canonical_key(USER, "O-1", TradeAction.ORDER_FILLED)

    _legacy_row(ledger, "O-1", TradeAction.ORDER_FILLED, EventSource.APP, t0, key=key)
    broker = _legacy_row(
        ledger, "O-1", TradeAction.ORDER_FILLED, EventSource.BROKER, t0 + timedelta(seconds=1)
    )
    _legacy_row(ledger, "O-1", TradeAction.ORDER_FILLED, EventSource.APP, t0 + timedelta(seconds=2))
    _legacy_row(ledger, "O-2", TradeAction.ORDER_PLACED, EventSource.APP, t0)

    first = ledger.cleanup_duplicate_logs(USER)
    assert (first.processed, first.deleted) == (1, 2)

    second = ledger.cleanup_duplicate_logs(USER)
    assert (second.processed, second.deleted) == (0, 0)

    rows = {(r.order_id, r.action): r for r in ledger.repo.list_for_user(USER)}
    kept = rows[("O-1", TradeAction.ORDER_FILLED)]
    assert kept.id == broker.id
    assert kept.canonical_key == key

    # the surviving row still answers for the key
    again = ledger.record_event(USER, "ORDER_FILLED", "O-1", "APP", _placed())
    assert again.id == broker.id


def test_cleanup_without_broker_keeps_oldest(db, notifier):
    ledger = EventLedger(db, notifier)
    t0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
    oldest = _legacy_row(ledger, "O-3", TradeAction.TARGET_HIT, EventSource.APP, t0)
    _legacy_row(ledger, "O-3", TradeAction.TARGET_HIT, EventSource.APP, t0 + timedelta(minutes=1))

    res = ledger.cleanup_duplicate_logs(USER)
    assert (res.processed, res.deleted) == (1, 1)
    assert [r.id for r in ledger.repo.list_for_user(USER)] == [oldest.id]


def test_cleanup_without_broker_moves_key_onto_oldest(db, notifier):
    ledger = EventLedger(db, notifier)
    t0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
    key = canonical_key(USER, "O-4", TradeAction.ORDER_PLACED)
    oldest = _legacy_row(ledger, "O-4", TradeAction.ORDER_PLACED, EventSource.APP, t0)
    _legacy_row(
        ledger, "O-4", TradeAction.ORDER_PLACED, EventSource.APP, t0 + timedelta(minutes=1), key=key
    )

    res = ledger.cleanup_duplicate_logs(USER)
    assert (res.processed, res.deleted) == (1, 1)
    [kept] = ledger.repo.list_for_user(USER)
    assert kept.id == oldest.id
    assert kept.canonical_key == key

    again = ledger.record_event(USER, "ORDER_PLACED", "O-4", "APP", _placed())
    assert again.id == oldest.id


def test_cleanup_ignores_journal_kinds(db, notifier):
    ledger = EventLedger(db, notifier)
    for _ in range(3):
        ledger.record_event(
            USER, "ORDER_MODIFIED", "O-1", "APP", {"symbol": SYM, "price": 10}
        )
    res = ledger.cleanup_duplicate_logs(USER)
    assert (res.processed, res.deleted) == (0, 0)
    assert len(ledger.list_all(USER)) == 3


# ---------- placed order followed by broker updates ----------
def test_broker_fill_after_app_placement_is_a_separate_entry(db, notifier):
    ledger = EventLedger(db, notifier)
    placed = ledger.record_event(
        USER, "ORDER_PLACED", "O1", "APP",
        {"symbol": "NIFTY25000CE", "side": "BUY", "quantity": 50, "price": 120},
    )
    assert placed.status == TradeStatus.PENDING

    filled = ledger.record_event(
        USER, "ORDER_FILLED", "O1", "BROKER", {"symbol": "NIFTY25000CE", "price": 121}
    )
    assert filled.id != placed.id
    assert filled.status == TradeStatus.FILLED
    assert filled.side == Side.BUY
    assert "side_inferred" not in filled.details

    rows = ledger.list_all(USER)
    assert {(r.action, r.source) for r in rows} == {
        (TradeAction.ORDER_PLACED, EventSource.APP),
        (TradeAction.ORDER_FILLED, EventSource.BROKER),
    }


def test_broker_rejection_leaves_placed_entry_untouched(db, notifier):
    ledger = EventLedger(db, notifier)
    placed = ledger.record_event(
        USER, "ORDER_PLACED", "O1", "APP",
        {"symbol": "NIFTY25000CE", "side": "BUY", "quantity": 50, "price": 120},
    )
    rejected = ledger.record_event(
        USER, "ORDER_REJECTED", "O1", "BROKER", {"symbol": "NIFTY25000CE"}
    )

    assert rejected.id != placed.id
    again = ledger.get_entry(USER, "O1", "ORDER_PLACED")
    assert again.source == EventSource.APP
    assert again.status == TradeStatus.PENDING
    assert again.price == 120

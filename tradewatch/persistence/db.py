from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional


# =========================
# Time helpers
# =========================
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def from_iso(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# =========================
# Database class
# =========================
class DB:
    """
    Single source of truth for SQLite access.
    Default path: data/tradewatch.db
    """

    def __init__(self, path: str = "data/tradewatch.db"):
        self.path = path

        folder = os.path.dirname(self.path)
        if folder:
            os.makedirs(folder, exist_ok=True)

        self._init()

    # -------------------------
    # Connection managers
    # -------------------------
    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Read-modify-write unit. BEGIN IMMEDIATE takes the write lock before the
        first read, so concurrent writers on the same rows serialize here.
        """
        conn = sqlite3.connect(
            self.path, timeout=30, check_same_thread=False, isolation_level=None
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    # -------------------------
    # Init / migrations
    # -------------------------
    def _init(self) -> None:
        conn = sqlite3.connect(self.path, timeout=30)
        try:
            conn.execute("PRAGMA journal_mode=WAL")

            # =========================
            # Broker credentials (one per user)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS broker_credentials (
                    user_id TEXT PRIMARY KEY,
                    access_token TEXT,
                    connected INTEGER NOT NULL DEFAULT 0,
                    last_connect_at TEXT,
                    last_disconnect_at TEXT,
                    updated_at TEXT NOT NULL
                )
                """
            )

            # =========================
            # Monitoring state (one document per user)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS monitoring_state (
                    user_id TEXT PRIMARY KEY,
                    state_json TEXT NOT NULL,
                    is_monitoring INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                )
                """
            )

            # =========================
            # Trade logs (event ledger)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS trade_logs (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    action TEXT NOT NULL,
                    order_type TEXT NOT NULL,
                    quantity REAL NOT NULL,
                    price REAL NOT NULL,
                    side TEXT,
                    product_type TEXT,
                    order_id TEXT,
                    status TEXT NOT NULL,
                    reason TEXT,
                    pnl REAL NOT NULL DEFAULT 0,
                    pnl_percentage REAL NOT NULL DEFAULT 0,
                    remarks TEXT NOT NULL DEFAULT '',
                    broker_status TEXT,
                    source TEXT NOT NULL,
                    details_json TEXT NOT NULL,
                    canonical_key TEXT,          -- NULL for journal kinds / manual exits
                    timestamp_utc TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

            # =========================
            # Notifications
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    read INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
                """
            )

            # =========================
            # Indexes
            # =========================
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS ux_trade_logs_key
                ON trade_logs(canonical_key) WHERE canonical_key IS NOT NULL
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_trade_logs_user_time ON trade_logs(user_id, timestamp_utc)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_trade_logs_order ON trade_logs(user_id, order_id, action)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, created_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_credentials_connected ON broker_credentials(connected)"
            )

            conn.commit()

        finally:
            conn.close()

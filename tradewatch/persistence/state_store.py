# tradewatch/persistence/state_store.py
from __future__ import annotations

import json
import sqlite3
from typing import Optional

from tradewatch.monitoring.models import UserMonitoringState
from tradewatch.persistence.db import DB, utc_now_iso


class MonitoringStateStore:
    """One JSON document per user in monitoring_state."""

    def __init__(self, db: DB):
        self.db = db

    # ---------- inside a transaction ----------
    def load(self, conn: sqlite3.Connection, user_id: str) -> Optional[UserMonitoringState]:
        row = conn.execute(
            "SELECT state_json FROM monitoring_state WHERE user_id = ?", (user_id,)
        ).fetchone()
        if not row:
            return None
        return UserMonitoringState.from_dict(json.loads(row["state_json"]))

    def save(self, conn: sqlite3.Connection, state: UserMonitoringState) -> None:
        """
        UPSERT the whole document (safe across restarts).
        """
        conn.execute(
            """
            INSERT INTO monitoring_state(user_id, state_json, is_monitoring, updated_at)
            VALUES (?,?,?,?)
            ON CONFLICT(user_id) DO UPDATE SET
                state_json=excluded.state_json,
                is_monitoring=excluded.is_monitoring,
                updated_at=excluded.updated_at
            """,
            (
                state.user_id,
                json.dumps(state.to_dict(), ensure_ascii=False),
                1 if state.execution.is_monitoring else 0,
                utc_now_iso(),
            ),
        )

    # ---------- standalone ----------
    def get(self, user_id: str) -> Optional[UserMonitoringState]:
        with self.db.connect() as conn:
            return self.load(conn, user_id)

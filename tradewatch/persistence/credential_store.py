# tradewatch/persistence/credential_store.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from tradewatch.persistence.db import DB, from_iso, utc_now_iso

log = logging.getLogger("tradewatch.credentials.store")


@dataclass
class BrokerCredential:
    user_id: str
    access_token: Optional[str] = None
    connected: bool = False
    last_connect_at: Optional[datetime] = None
    last_disconnect_at: Optional[datetime] = None


class CredentialStore:
    """
    Per-user broker session tokens plus the connected flag.
    The health monitor is the only writer of the disconnected state.
    """

    def __init__(self, db: DB):
        self.db = db

    @staticmethod
    def _row_to_credential(r) -> BrokerCredential:
        return BrokerCredential(
            user_id=r["user_id"],
            access_token=r["access_token"],
            connected=bool(r["connected"]),
            last_connect_at=from_iso(r["last_connect_at"]),
            last_disconnect_at=from_iso(r["last_disconnect_at"]),
        )

    def save_credentials(self, user_id: str, access_token: str) -> BrokerCredential:
        """
        UPSERT after a (re-)authentication. Marks the user connected.
        """
        now = utc_now_iso()
        with self.db.connect() as conn:
            row = conn.execute(
                """
                INSERT INTO broker_credentials(
                    user_id, access_token, connected, last_connect_at, updated_at
                )
                VALUES (?,?,1,?,?)
                ON CONFLICT(user_id) DO UPDATE SET
                    access_token=excluded.access_token,
                    connected=1,
                    last_connect_at=excluded.last_connect_at,
                    updated_at=excluded.updated_at
                RETURNING *
                """,
                (user_id, access_token, now, now),
            ).fetchone()
        return self._row_to_credential(row)

    def get(self, user_id: str) -> Optional[BrokerCredential]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM broker_credentials WHERE user_id = ?", (user_id,)
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def list_connected(self) -> List[BrokerCredential]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM broker_credentials WHERE connected = 1 ORDER BY user_id"
            ).fetchall()
        return [self._row_to_credential(r) for r in rows]

    def mark_disconnected(self, user_id: str) -> None:
        now = utc_now_iso()
        with self.db.connect() as conn:
            conn.execute(
                """
                UPDATE broker_credentials
                SET connected = 0, last_disconnect_at = ?, updated_at = ?
                WHERE user_id = ?
                """,
                (now, now, user_id),
            )
        log.info("marked user %s as disconnected (expired session)", user_id)

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from .utils import _from_db_ts, _sqlite_session_connection, _to_db_ts


class SqliteLedgerMixin:
    async def upsert_delivery(self, delivery_id: str, owner_id: str, now: datetime) -> Dict[str, Any]:
        """Insert or bump the ledger row in one statement and return the post-write counters."""
        stamp = _to_db_ts(now)
        async with _sqlite_session_connection(self.db_path) as db:
            async with db.execute(
                """
                INSERT INTO idempotency_ledger (delivery_id, owner_id, retry_count, first_seen, last_seen)
                VALUES (?, ?, 0, ?, ?)
                ON CONFLICT(delivery_id) DO UPDATE SET
                    retry_count = idempotency_ledger.retry_count + 1,
                    last_seen = excluded.last_seen
                RETURNING retry_count, first_seen
                """,
                (delivery_id, owner_id, stamp, stamp),
            ) as cursor:
                row = await cursor.fetchone()
        return {
            "retry_count": int(row["retry_count"]),
            "first_seen": _from_db_ts(row["first_seen"]),
        }

    async def purge_ledger(self, cutoff: datetime) -> int:
        async with _sqlite_session_connection(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM idempotency_ledger WHERE last_seen < ?",
                (_to_db_ts(cutoff),),
            )
            return int(cursor.rowcount or 0)

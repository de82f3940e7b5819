from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from .utils import _from_db_ts, _row_dict, _sqlite_session_connection, _to_db_ts


class SqliteHistoryMixin:
    async def list_history(self, owner_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        async with _sqlite_session_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT history_id, owner_id, previous_state, new_state, origin, reason, version, created_at
                FROM session_history
                WHERE owner_id = ?
                ORDER BY history_id DESC
                LIMIT ?
                """,
                (owner_id, max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        result: List[Dict[str, Any]] = []
        for row in rows:
            data = _row_dict(row)
            data["created_at"] = _from_db_ts(data["created_at"])
            result.append(data)
        return result

    async def purge_history(self, cutoff: datetime) -> int:
        async with _sqlite_session_connection(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM session_history WHERE created_at < ?",
                (_to_db_ts(cutoff),),
            )
            return int(cursor.rowcount or 0)

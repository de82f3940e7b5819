from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List

import aiosqlite

from .utils import (
    _from_db_ts,
    _immediate_transaction,
    _placeholders,
    _row_dict,
    _sqlite_session_connection,
    _to_db_ts,
)


_SESSION_COLUMNS = """
    owner_id, state, payload, equipment_ref, version, message_count,
    warning_sent, created_at, last_activity
"""


def _session_row(row: aiosqlite.Row | None) -> Dict[str, Any] | None:
    if row is None:
        return None
    data = _row_dict(row)
    data["created_at"] = _from_db_ts(data["created_at"])
    data["last_activity"] = _from_db_ts(data["last_activity"])
    data["warning_sent"] = bool(data.get("warning_sent"))
    return data


class SqliteSessionsMixin:
    async def _insert_session_if_absent(
        self,
        db: aiosqlite.Connection,
        owner_id: str,
        initial_state: str,
        now: datetime,
    ) -> None:
        stamp = _to_db_ts(now)
        await db.execute(
            """
            INSERT INTO sessions (owner_id, state, payload, equipment_ref, version, message_count,
                                  warning_sent, created_at, last_activity)
            VALUES (?, ?, NULL, NULL, 0, 0, 0, ?, ?)
            ON CONFLICT(owner_id) DO NOTHING
            """,
            (owner_id, initial_state, stamp, stamp),
        )

    async def _select_session(self, db: aiosqlite.Connection, owner_id: str) -> aiosqlite.Row | None:
        async with db.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE owner_id = ?",
            (owner_id,),
        ) as cursor:
            return await cursor.fetchone()

    async def fetch_or_create_session(
        self,
        owner_id: str,
        initial_state: str,
        now: datetime,
    ) -> Dict[str, Any]:
        async with _sqlite_session_connection(self.db_path) as db:
            row = await self._select_session(db, owner_id)
            if row is None:
                # Two workers may race here; ON CONFLICT keeps whichever insert landed first.
                await self._insert_session_if_absent(db, owner_id, initial_state, now)
                row = await self._select_session(db, owner_id)
        data = _session_row(row)
        if data is None:
            raise RuntimeError(f"Session row for {owner_id} vanished right after insert")
        return data

    async def apply_transition(
        self,
        *,
        owner_id: str,
        new_state: str,
        payload_json: str | None,
        equipment_ref: int | None,
        origin: str,
        reason: str,
        expected_version: int | None,
        initial_state: str,
        now: datetime,
        idle_before: datetime | None = None,
        attempt_id: str | None = None,
    ) -> Dict[str, Any]:
        stamp = _to_db_ts(now)
        async with _sqlite_session_connection(self.db_path) as db:
            async with _immediate_transaction(db):
                if attempt_id:
                    async with db.execute(
                        "SELECT previous_state, version FROM session_history WHERE attempt_id = ?",
                        (attempt_id,),
                    ) as cursor:
                        landed = await cursor.fetchone()
                    if landed is not None:
                        # An earlier attempt of this call committed before its reply was lost.
                        await db.rollback()
                        return {
                            "status": "applied",
                            "version": int(landed["version"]),
                            "previous_state": landed["previous_state"],
                            "replayed": True,
                        }
                await self._insert_session_if_absent(db, owner_id, initial_state, now)
                async with db.execute(
                    "SELECT state, version, last_activity FROM sessions WHERE owner_id = ?",
                    (owner_id,),
                ) as cursor:
                    current = await cursor.fetchone()
                previous_state = str(current["state"])
                current_version = int(current["version"])

                if expected_version is not None and expected_version != current_version:
                    await db.rollback()
                    return {"status": "conflict", "version": current_version, "previous_state": previous_state}
                # Touches do not bump the version, so idleness is re-checked under the write lock.
                if idle_before is not None and _from_db_ts(current["last_activity"]) > idle_before:
                    await db.rollback()
                    return {"status": "conflict", "version": current_version, "previous_state": previous_state}

                cursor = await db.execute(
                    """
                    UPDATE sessions
                    SET state = ?,
                        payload = ?,
                        equipment_ref = ?,
                        version = version + 1,
                        warning_sent = 0,
                        warning_sent_at = NULL,
                        last_activity = ?
                    WHERE owner_id = ? AND version = ?
                    """,
                    (new_state, payload_json, equipment_ref, stamp, owner_id, current_version),
                )
                if cursor.rowcount != 1:
                    await db.rollback()
                    return {"status": "conflict", "version": None, "previous_state": previous_state}

                committed_version = current_version + 1
                await db.execute(
                    """
                    INSERT INTO session_history (owner_id, previous_state, new_state, origin, reason, version,
                                                 attempt_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (owner_id, previous_state, new_state, origin, reason, committed_version, attempt_id, stamp),
                )
        return {"status": "applied", "version": committed_version, "previous_state": previous_state}

    async def touch_session(
        self,
        owner_id: str,
        initial_state: str,
        now: datetime,
        *,
        inbound_message: bool = False,
    ) -> None:
        stamp = _to_db_ts(now)
        async with _sqlite_session_connection(self.db_path) as db:
            async with _immediate_transaction(db):
                await self._insert_session_if_absent(db, owner_id, initial_state, now)
                await db.execute(
                    """
                    UPDATE sessions
                    SET last_activity = ?,
                        message_count = message_count + ?,
                        warning_sent = 0,
                        warning_sent_at = NULL
                    WHERE owner_id = ?
                    """,
                    (stamp, 1 if inbound_message else 0, owner_id),
                )

    async def find_idle_sessions(
        self,
        cutoff: datetime,
        excluded_states: Iterable[str],
        limit: int,
    ) -> List[Dict[str, Any]]:
        excluded = list(excluded_states)
        async with _sqlite_session_connection(self.db_path) as db:
            async with db.execute(
                f"""
                SELECT owner_id, state, version, last_activity
                FROM sessions
                WHERE last_activity <= ?
                  AND state NOT IN ({_placeholders(excluded)})
                ORDER BY last_activity ASC
                LIMIT ?
                """,
                (_to_db_ts(cutoff), *excluded, int(limit)),
            ) as cursor:
                rows = await cursor.fetchall()
        result: List[Dict[str, Any]] = []
        for row in rows:
            data = _row_dict(row)
            data["last_activity"] = _from_db_ts(data["last_activity"])
            result.append(data)
        return result

    async def claim_warning_candidates(
        self,
        cutoff: datetime,
        excluded_states: Iterable[str],
        now: datetime,
        limit: int,
    ) -> List[Dict[str, Any]]:
        excluded = list(excluded_states)
        async with _sqlite_session_connection(self.db_path) as db:
            async with _immediate_transaction(db):
                async with db.execute(
                    f"""
                    UPDATE sessions
                    SET warning_sent = 1,
                        warning_sent_at = ?
                    WHERE owner_id IN (
                        SELECT owner_id
                        FROM sessions
                        WHERE warning_sent = 0
                          AND last_activity <= ?
                          AND state NOT IN ({_placeholders(excluded)})
                        ORDER BY last_activity ASC
                        LIMIT ?
                    )
                    RETURNING owner_id, state, version, last_activity
                    """,
                    (_to_db_ts(now), _to_db_ts(cutoff), *excluded, int(limit)),
                ) as cursor:
                    rows = await cursor.fetchall()
        result: List[Dict[str, Any]] = []
        for row in rows:
            data = _row_dict(row)
            data["last_activity"] = _from_db_ts(data["last_activity"])
            result.append(data)
        return result

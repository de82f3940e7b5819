from __future__ import annotations

import os
from pathlib import Path

import aiosqlite

from .utils import _sqlite_session_connection


class SqliteSchemaMixin:
    SCHEMA_VERSION = 3

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _allow_destructive_reset_on_mismatch() -> bool:
        raw = os.getenv("SESSION_SQLITE_RESET_ON_SCHEMA_MISMATCH", "")
        return raw.strip().lower() in {"1", "true", "yes", "y", "on"}

    async def _has_user_tables(self, db: aiosqlite.Connection) -> bool:
        async with db.execute(
            """
            SELECT 1
            FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite_%'
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row)

    async def init(self) -> None:
        async with _sqlite_session_connection(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0
            has_tables = await self._has_user_tables(db)

            if version > self.SCHEMA_VERSION:
                if has_tables and self._allow_destructive_reset_on_mismatch():
                    await self._reset_schema(db)
                    await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
                    return
                raise RuntimeError(
                    "SQLite schema version mismatch detected (database is newer than this build). "
                    f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                    "Set SESSION_SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                )

            await self._create_schema(db)
            await self._migrate_schema(db, version if has_tables else 0)
            if version != self.SCHEMA_VERSION:
                await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")

    async def close(self) -> None:
        return None

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        for table in ("session_history", "idempotency_ledger", "sessions"):
            await db.execute(f"DROP TABLE IF EXISTS {table}")
        await self._create_schema(db)
        await self._migrate_schema(db, 0)

    async def _table_columns(self, db: aiosqlite.Connection, table_name: str) -> set[str]:
        async with db.execute(f"PRAGMA table_info({table_name})") as cursor:
            rows = await cursor.fetchall()
        return {str(row[1]) for row in rows}

    async def _add_column_if_missing(self, db: aiosqlite.Connection, table_name: str, column_sql: str) -> None:
        column_name = str(column_sql.split()[0]).strip()
        if not column_name:
            return
        cols = await self._table_columns(db, table_name)
        if column_name in cols:
            return
        await db.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_sql}")

    async def _migrate_schema(self, db: aiosqlite.Connection, from_version: int) -> None:
        if from_version < 2:
            await self._migrate_v2_warning_columns(db)
        if from_version < 3:
            await self._migrate_v3_attempt_ids(db)

    async def _migrate_v2_warning_columns(self, db: aiosqlite.Connection) -> None:
        await self._add_column_if_missing(db, "sessions", "warning_sent INTEGER NOT NULL DEFAULT 0")
        await self._add_column_if_missing(db, "sessions", "warning_sent_at TEXT")

    async def _migrate_v3_attempt_ids(self, db: aiosqlite.Connection) -> None:
        await self._add_column_if_missing(db, "session_history", "attempt_id TEXT")
        await db.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_session_history_attempt ON session_history(attempt_id)"
        )

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                owner_id TEXT PRIMARY KEY,
                state TEXT NOT NULL,
                payload TEXT,
                equipment_ref INTEGER,
                version INTEGER NOT NULL DEFAULT 0,
                message_count INTEGER NOT NULL DEFAULT 0,
                warning_sent INTEGER NOT NULL DEFAULT 0,
                warning_sent_at TEXT,
                created_at TEXT NOT NULL,
                last_activity TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_state_activity
                ON sessions(state, last_activity);

            CREATE TABLE IF NOT EXISTS session_history (
                history_id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_id TEXT NOT NULL,
                previous_state TEXT,
                new_state TEXT NOT NULL,
                origin TEXT NOT NULL,
                reason TEXT NOT NULL DEFAULT '',
                version INTEGER NOT NULL,
                attempt_id TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_session_history_owner
                ON session_history(owner_id, created_at DESC);

            CREATE INDEX IF NOT EXISTS idx_session_history_created
                ON session_history(created_at);

            CREATE TABLE IF NOT EXISTS idempotency_ledger (
                delivery_id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL DEFAULT '',
                retry_count INTEGER NOT NULL DEFAULT 0,
                first_seen TEXT NOT NULL,
                last_seen TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_idempotency_ledger_last_seen
                ON idempotency_ledger(last_seen);
            """
        )

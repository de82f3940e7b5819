from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List

try:
    import asyncpg
except Exception:  # pragma: no cover - optional dependency at runtime
    asyncpg = None  # type: ignore[assignment]


logger = logging.getLogger("fixbot_sessions")


def _record_dict(row: Any) -> Dict[str, Any]:
    return {key: row[key] for key in row.keys()}


class PostgresSessionBackend:
    """Postgres-backed session store implementing the same API as SqliteSessionBackend."""

    SCHEMA_VERSION = 3
    backend_name = "postgres"

    def __init__(self, dsn: str, *, pool_max_size: int = 10, command_timeout: float = 30.0) -> None:
        self.dsn = dsn.strip()
        if not self.dsn:
            raise ValueError("SESSION_POSTGRES_DSN cannot be empty")
        self.pool_max_size = max(1, int(pool_max_size))
        self.command_timeout = float(command_timeout)
        self._pool: "asyncpg.Pool | None" = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def _ensure_pool(self) -> "asyncpg.Pool":
        if asyncpg is None:
            raise RuntimeError(
                "Postgres session backend requires asyncpg. Install with: pip install asyncpg"
            )
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=1,
                max_size=self.pool_max_size,
                command_timeout=self.command_timeout,
            )
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._initialized = False

    async def ping(self) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute("SELECT 1")

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                async with conn.transaction():
                    version = await self._get_schema_version(conn)
                    if version > self.SCHEMA_VERSION:
                        raise RuntimeError(
                            f"Postgres session schema version {version} is newer than supported {self.SCHEMA_VERSION}. "
                            "Upgrade fixbot-sessions before starting."
                        )
                    await self._create_schema(conn)
                    await self._migrate_schema(conn, version)
                    if version != self.SCHEMA_VERSION:
                        await self._set_schema_version(conn, self.SCHEMA_VERSION)
            self._initialized = True
            logger.info("Postgres session schema ready (version %s)", self.SCHEMA_VERSION)

    async def _get_schema_version(self, conn: "asyncpg.Connection") -> int:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS session_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        row = await conn.fetchrow("SELECT value FROM session_meta WHERE key = 'schema_version'")
        if row is None:
            return 0
        try:
            return int(str(row["value"]))
        except ValueError:
            return 0

    async def _set_schema_version(self, conn: "asyncpg.Connection", version: int) -> None:
        await conn.execute(
            """
            INSERT INTO session_meta (key, value, updated_at)
            VALUES ('schema_version', $1, NOW())
            ON CONFLICT(key) DO UPDATE SET
                value = EXCLUDED.value,
                updated_at = NOW()
            """,
            str(int(version)),
        )

    async def _migrate_schema(self, conn: "asyncpg.Connection", from_version: int) -> None:
        # v2: inactivity warning claim columns (additive).
        if from_version < 2:
            await conn.execute(
                "ALTER TABLE sessions ADD COLUMN IF NOT EXISTS warning_sent BOOLEAN NOT NULL DEFAULT FALSE"
            )
            await conn.execute("ALTER TABLE sessions ADD COLUMN IF NOT EXISTS warning_sent_at TIMESTAMPTZ")
        # v3: per-call attempt ids so a retried transition can find its own commit.
        if from_version < 3:
            await conn.execute("ALTER TABLE session_history ADD COLUMN IF NOT EXISTS attempt_id TEXT")
            await conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_session_history_attempt ON session_history(attempt_id)"
            )

    async def _create_schema(self, conn: "asyncpg.Connection") -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                owner_id TEXT PRIMARY KEY,
                state TEXT NOT NULL,
                payload JSONB,
                equipment_ref BIGINT,
                version INTEGER NOT NULL DEFAULT 0,
                message_count INTEGER NOT NULL DEFAULT 0,
                warning_sent BOOLEAN NOT NULL DEFAULT FALSE,
                warning_sent_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL,
                last_activity TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_sessions_state_activity ON sessions(state, last_activity)"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS session_history (
                history_id BIGSERIAL PRIMARY KEY,
                owner_id TEXT NOT NULL,
                previous_state TEXT,
                new_state TEXT NOT NULL,
                origin TEXT NOT NULL,
                reason TEXT NOT NULL DEFAULT '',
                version INTEGER NOT NULL,
                attempt_id TEXT,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_session_history_owner ON session_history(owner_id, created_at DESC)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_session_history_created ON session_history(created_at)"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS idempotency_ledger (
                delivery_id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL DEFAULT '',
                retry_count INTEGER NOT NULL DEFAULT 0,
                first_seen TIMESTAMPTZ NOT NULL,
                last_seen TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_idempotency_ledger_last_seen ON idempotency_ledger(last_seen)"
        )

    async def _insert_session_if_absent(
        self,
        conn: "asyncpg.Connection",
        owner_id: str,
        initial_state: str,
        now: datetime,
    ) -> None:
        await conn.execute(
            """
            INSERT INTO sessions (owner_id, state, payload, equipment_ref, version, message_count,
                                  warning_sent, created_at, last_activity)
            VALUES ($1, $2, NULL, NULL, 0, 0, FALSE, $3, $3)
            ON CONFLICT (owner_id) DO NOTHING
            """,
            owner_id,
            initial_state,
            now,
        )

    async def fetch_or_create_session(
        self,
        owner_id: str,
        initial_state: str,
        now: datetime,
    ) -> Dict[str, Any]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            query = """
                SELECT owner_id, state, payload::text AS payload, equipment_ref, version, message_count,
                       warning_sent, created_at, last_activity
                FROM sessions
                WHERE owner_id = $1
            """
            row = await conn.fetchrow(query, owner_id)
            if row is None:
                await self._insert_session_if_absent(conn, owner_id, initial_state, now)
                row = await conn.fetchrow(query, owner_id)
        if row is None:
            raise RuntimeError(f"Session row for {owner_id} vanished right after insert")
        return _record_dict(row)

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
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            tx = conn.transaction()
            await tx.start()
            try:
                if attempt_id:
                    landed = await conn.fetchrow(
                        "SELECT previous_state, version FROM session_history WHERE attempt_id = $1",
                        attempt_id,
                    )
                    if landed is not None:
                        await tx.rollback()
                        return {
                            "status": "applied",
                            "version": int(landed["version"]),
                            "previous_state": landed["previous_state"],
                            "replayed": True,
                        }
                await self._insert_session_if_absent(conn, owner_id, initial_state, now)
                current = await conn.fetchrow(
                    "SELECT state, version, last_activity FROM sessions WHERE owner_id = $1 FOR UPDATE",
                    owner_id,
                )
                previous_state = str(current["state"])
                current_version = int(current["version"])

                if expected_version is not None and expected_version != current_version:
                    await tx.rollback()
                    return {"status": "conflict", "version": current_version, "previous_state": previous_state}
                if idle_before is not None and current["last_activity"] > idle_before:
                    await tx.rollback()
                    return {"status": "conflict", "version": current_version, "previous_state": previous_state}

                status = await conn.execute(
                    """
                    UPDATE sessions
                    SET state = $2,
                        payload = $3::jsonb,
                        equipment_ref = $4,
                        version = version + 1,
                        warning_sent = FALSE,
                        warning_sent_at = NULL,
                        last_activity = $5
                    WHERE owner_id = $1 AND version = $6
                    """,
                    owner_id,
                    new_state,
                    payload_json,
                    equipment_ref,
                    now,
                    current_version,
                )
                if not status.endswith(" 1"):
                    await tx.rollback()
                    return {"status": "conflict", "version": None, "previous_state": previous_state}

                committed_version = current_version + 1
                await conn.execute(
                    """
                    INSERT INTO session_history (owner_id, previous_state, new_state, origin, reason, version,
                                                 attempt_id, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    """,
                    owner_id,
                    previous_state,
                    new_state,
                    origin,
                    reason,
                    committed_version,
                    attempt_id,
                    now,
                )
            except BaseException:
                await tx.rollback()
                raise
            await tx.commit()
        return {"status": "applied", "version": committed_version, "previous_state": previous_state}

    async def touch_session(
        self,
        owner_id: str,
        initial_state: str,
        now: datetime,
        *,
        inbound_message: bool = False,
    ) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO sessions (owner_id, state, payload, equipment_ref, version, message_count,
                                      warning_sent, created_at, last_activity)
                VALUES ($1, $2, NULL, NULL, 0, $4, FALSE, $3, $3)
                ON CONFLICT (owner_id) DO UPDATE SET
                    last_activity = EXCLUDED.last_activity,
                    message_count = sessions.message_count + EXCLUDED.message_count,
                    warning_sent = FALSE,
                    warning_sent_at = NULL
                """,
                owner_id,
                initial_state,
                now,
                1 if inbound_message else 0,
            )

    async def find_idle_sessions(
        self,
        cutoff: datetime,
        excluded_states: Iterable[str],
        limit: int,
    ) -> List[Dict[str, Any]]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT owner_id, state, version, last_activity
                FROM sessions
                WHERE last_activity <= $1
                  AND NOT (state = ANY($2::text[]))
                ORDER BY last_activity ASC
                LIMIT $3
                """,
                cutoff,
                list(excluded_states),
                int(limit),
            )
        return [_record_dict(row) for row in rows]

    async def claim_warning_candidates(
        self,
        cutoff: datetime,
        excluded_states: Iterable[str],
        now: datetime,
        limit: int,
    ) -> List[Dict[str, Any]]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                UPDATE sessions
                SET warning_sent = TRUE,
                    warning_sent_at = $3
                WHERE owner_id IN (
                    SELECT owner_id
                    FROM sessions
                    WHERE warning_sent = FALSE
                      AND last_activity <= $1
                      AND NOT (state = ANY($2::text[]))
                    ORDER BY last_activity ASC
                    LIMIT $4
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING owner_id, state, version, last_activity
                """,
                cutoff,
                list(excluded_states),
                now,
                int(limit),
            )
        return [_record_dict(row) for row in rows]

    async def list_history(self, owner_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT history_id, owner_id, previous_state, new_state, origin, reason, version, created_at
                FROM session_history
                WHERE owner_id = $1
                ORDER BY history_id DESC
                LIMIT $2
                """,
                owner_id,
                max(1, int(limit)),
            )
        return [_record_dict(row) for row in rows]

    async def purge_history(self, cutoff: datetime) -> int:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            status = await conn.execute("DELETE FROM session_history WHERE created_at < $1", cutoff)
        return _affected_rows(status)

    async def upsert_delivery(self, delivery_id: str, owner_id: str, now: datetime) -> Dict[str, Any]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO idempotency_ledger (delivery_id, owner_id, retry_count, first_seen, last_seen)
                VALUES ($1, $2, 0, $3, $3)
                ON CONFLICT (delivery_id) DO UPDATE SET
                    retry_count = idempotency_ledger.retry_count + 1,
                    last_seen = EXCLUDED.last_seen
                RETURNING retry_count, first_seen
                """,
                delivery_id,
                owner_id,
                now,
            )
        return {"retry_count": int(row["retry_count"]), "first_seen": row["first_seen"]}

    async def purge_ledger(self, cutoff: datetime) -> int:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            status = await conn.execute("DELETE FROM idempotency_ledger WHERE last_seen < $1", cutoff)
        return _affected_rows(status)


def _affected_rows(status: str) -> int:
    # asyncpg returns the command tag, e.g. "DELETE 12".
    try:
        return int(str(status).rsplit(" ", 1)[-1])
    except ValueError:
        return 0

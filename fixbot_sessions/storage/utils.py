from __future__ import annotations

import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Iterable

try:
    import aiosqlite
except Exception:  # pragma: no cover - optional in Postgres-only deployments
    aiosqlite = None  # type: ignore[assignment]


def _sqlite_busy_timeout_ms() -> int:
    raw = os.getenv("SESSION_SQLITE_BUSY_TIMEOUT_MS", "5000").strip()
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 5000
    return max(0, min(timeout, 60000))


@asynccontextmanager
async def _sqlite_session_connection(db_path: str | Path) -> AsyncIterator["aiosqlite.Connection"]:
    if aiosqlite is None:
        raise RuntimeError("SQLite session backend requires aiosqlite")
    # Autocommit mode: every write path below opens its own BEGIN IMMEDIATE.
    async with aiosqlite.connect(db_path, isolation_level=None) as db:  # type: ignore[union-attr]
        db.row_factory = aiosqlite.Row  # type: ignore[union-attr]
        await db.execute("PRAGMA foreign_keys=ON")
        timeout_ms = _sqlite_busy_timeout_ms()
        if timeout_ms > 0:
            await db.execute(f"PRAGMA busy_timeout={timeout_ms}")
        yield db


@asynccontextmanager
async def _immediate_transaction(db: "aiosqlite.Connection") -> AsyncIterator["aiosqlite.Connection"]:
    """Take the write lock up front so read-then-write sequences cannot interleave."""
    await db.execute("BEGIN IMMEDIATE")
    try:
        yield db
    except BaseException:
        if db.in_transaction:
            await db.rollback()
        raise
    if db.in_transaction:
        await db.commit()


def _to_db_ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db_ts(value: object) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _placeholders(values: Iterable[object]) -> str:
    return ", ".join("?" for _ in values)


def _row_dict(row: object) -> dict[str, object]:
    if row is None:
        return {}
    return {key: row[key] for key in row.keys()}  # type: ignore[attr-defined]

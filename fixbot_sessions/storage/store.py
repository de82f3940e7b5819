from __future__ import annotations

from .history import SqliteHistoryMixin
from .ledger import SqliteLedgerMixin
from .schema import SqliteSchemaMixin
from .sessions import SqliteSessionsMixin
from .utils import _sqlite_session_connection


class SqliteSessionBackend(
    SqliteSchemaMixin,
    SqliteSessionsMixin,
    SqliteHistoryMixin,
    SqliteLedgerMixin,
):
    """Session, transition-history and idempotency tables in one SQLite file."""

    backend_name = "sqlite"

    async def ping(self) -> None:
        async with _sqlite_session_connection(self.db_path) as db:
            await db.execute("SELECT 1")

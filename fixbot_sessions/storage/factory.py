from __future__ import annotations

from typing import Any

from ..config import Settings
from .store import SqliteSessionBackend


def build_backend(settings: Settings) -> Any:
    backend = settings.session_backend
    if backend == "sqlite":
        return SqliteSessionBackend(settings.sqlite_path)
    if backend != "postgres":
        raise ValueError("SESSION_BACKEND must be 'sqlite' or 'postgres'")
    if not settings.postgres_dsn:
        raise ValueError("SESSION_POSTGRES_DSN is required when SESSION_BACKEND=postgres")

    from .postgres_store import PostgresSessionBackend

    return PostgresSessionBackend(
        settings.postgres_dsn,
        pool_max_size=settings.postgres_pool_max,
        command_timeout=settings.store_timeout_seconds,
    )

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


@dataclass(slots=True)
class Settings:
    session_backend: str
    sqlite_path: Path
    postgres_dsn: str
    postgres_pool_max: int

    store_timeout_seconds: float
    store_max_retries: int
    store_retry_base_delay_ms: int
    store_retry_max_delay_ms: int

    session_cache_ttl_seconds: float
    cache_negative_ttl_seconds: float
    cache_cleanup_interval_seconds: int
    cache_max_local_entries: int

    redis_enabled: bool
    redis_url: str
    redis_key_prefix: str
    redis_timeout_ms: int

    session_timeout_minutes: int
    session_warning_minutes: int
    reaper_interval_seconds: int
    reaper_batch_size: int

    ledger_retention_minutes: int
    history_retention_days: int

    log_level: str

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            session_backend=_env_str("SESSION_BACKEND", "sqlite").lower(),
            sqlite_path=Path(_env_str("SESSION_SQLITE_PATH", "./data/sessions.db")).expanduser(),
            postgres_dsn=_env_str("SESSION_POSTGRES_DSN", "", aliases=("DATABASE_URL",)),
            postgres_pool_max=_env_int("SESSION_POSTGRES_POOL_MAX", 10),
            store_timeout_seconds=_env_float("STORE_TIMEOUT_SECONDS", 15.0),
            store_max_retries=_env_int("STORE_MAX_RETRIES", 3),
            store_retry_base_delay_ms=_env_int("STORE_RETRY_BASE_DELAY_MS", 500),
            store_retry_max_delay_ms=_env_int("STORE_RETRY_MAX_DELAY_MS", 5000),
            session_cache_ttl_seconds=_env_float("SESSION_CACHE_TTL_SECONDS", 300.0),
            cache_negative_ttl_seconds=_env_float("CACHE_NEGATIVE_TTL_SECONDS", 15.0),
            cache_cleanup_interval_seconds=_env_int("CACHE_CLEANUP_INTERVAL_SECONDS", 120),
            cache_max_local_entries=_env_int("CACHE_MAX_LOCAL_ENTRIES", 10000),
            redis_enabled=_env_bool("REDIS_ENABLED", False),
            redis_url=_env_str("REDIS_URL", ""),
            redis_key_prefix=_env_str("REDIS_KEY_PREFIX", "fixbot:"),
            redis_timeout_ms=_env_int("REDIS_TIMEOUT_MS", 150),
            session_timeout_minutes=_env_int("SESSION_TIMEOUT_MINUTES", 30),
            session_warning_minutes=_env_int("SESSION_WARNING_MINUTES", 25),
            reaper_interval_seconds=_env_int("REAPER_INTERVAL_SECONDS", 300),
            reaper_batch_size=_env_int("REAPER_BATCH_SIZE", 500),
            ledger_retention_minutes=_env_int("LEDGER_RETENTION_MINUTES", 60),
            history_retention_days=_env_int("HISTORY_RETENTION_DAYS", 90),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
        )

    def validate(self) -> None:
        if self.session_backend not in {"sqlite", "postgres"}:
            raise ValueError("SESSION_BACKEND must be 'sqlite' or 'postgres'")
        if self.session_backend == "postgres" and not self.postgres_dsn:
            raise ValueError("SESSION_POSTGRES_DSN is required when SESSION_BACKEND=postgres")
        if self.postgres_pool_max < 1:
            raise ValueError("SESSION_POSTGRES_POOL_MAX must be >= 1")

        if self.store_timeout_seconds <= 0:
            raise ValueError("STORE_TIMEOUT_SECONDS must be > 0")
        if self.store_max_retries < 0:
            raise ValueError("STORE_MAX_RETRIES must be >= 0")
        if self.store_retry_base_delay_ms < 0:
            raise ValueError("STORE_RETRY_BASE_DELAY_MS must be >= 0")
        if self.store_retry_max_delay_ms < self.store_retry_base_delay_ms:
            raise ValueError("STORE_RETRY_MAX_DELAY_MS must be >= STORE_RETRY_BASE_DELAY_MS")

        if self.session_cache_ttl_seconds <= 0:
            raise ValueError("SESSION_CACHE_TTL_SECONDS must be > 0")
        if self.cache_negative_ttl_seconds < 0:
            raise ValueError("CACHE_NEGATIVE_TTL_SECONDS must be >= 0 (0 disables negative caching)")
        if self.cache_negative_ttl_seconds > self.session_cache_ttl_seconds / 4:
            raise ValueError("CACHE_NEGATIVE_TTL_SECONDS must be <= a quarter of SESSION_CACHE_TTL_SECONDS")
        if self.cache_cleanup_interval_seconds < 1:
            raise ValueError("CACHE_CLEANUP_INTERVAL_SECONDS must be >= 1")
        if self.cache_max_local_entries < 100:
            raise ValueError("CACHE_MAX_LOCAL_ENTRIES must be >= 100")

        if self.redis_enabled and not self.redis_url:
            raise ValueError("REDIS_URL is required when REDIS_ENABLED=1")
        if self.redis_timeout_ms < 10:
            raise ValueError("REDIS_TIMEOUT_MS must be >= 10")

        if self.session_timeout_minutes < 1:
            raise ValueError("SESSION_TIMEOUT_MINUTES must be >= 1")
        if self.session_warning_minutes < 1:
            raise ValueError("SESSION_WARNING_MINUTES must be >= 1")
        if self.session_warning_minutes >= self.session_timeout_minutes:
            raise ValueError("SESSION_WARNING_MINUTES must be < SESSION_TIMEOUT_MINUTES")
        if self.reaper_interval_seconds < 10:
            raise ValueError("REAPER_INTERVAL_SECONDS must be >= 10")
        if self.reaper_batch_size < 1:
            raise ValueError("REAPER_BATCH_SIZE must be >= 1")

        if self.ledger_retention_minutes < 1:
            raise ValueError("LEDGER_RETENTION_MINUTES must be >= 1")
        if self.history_retention_days < 1:
            raise ValueError("HISTORY_RETENTION_DAYS must be >= 1")

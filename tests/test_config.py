from __future__ import annotations

import sys
from dataclasses import replace
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from fixbot_sessions.config import Settings  # noqa: E402


_VARS = (
    "SESSION_BACKEND",
    "SESSION_SQLITE_PATH",
    "SESSION_POSTGRES_DSN",
    "DATABASE_URL",
    "SESSION_CACHE_TTL_SECONDS",
    "CACHE_NEGATIVE_TTL_SECONDS",
    "SESSION_TIMEOUT_MINUTES",
    "SESSION_WARNING_MINUTES",
    "REDIS_ENABLED",
    "REDIS_URL",
    "REDIS_KEY_PREFIX",
    "STORE_MAX_RETRIES",
    "LOG_LEVEL",
)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for name in _VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults_are_valid(clean_env: pytest.MonkeyPatch) -> None:
    settings = Settings.from_env()
    settings.validate()

    assert settings.session_backend == "sqlite"
    assert settings.sqlite_path == Path("./data/sessions.db")
    assert settings.session_cache_ttl_seconds == 300.0
    assert settings.cache_negative_ttl_seconds == 15.0
    assert settings.session_timeout_minutes == 30
    assert settings.session_warning_minutes == 25
    assert settings.redis_key_prefix == "fixbot:"
    assert settings.redis_enabled is False
    assert settings.store_max_retries == 3
    assert settings.log_level == "INFO"


def test_env_values_override_and_malformed_numbers_fall_back(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("SESSION_BACKEND", " Postgres ")
    clean_env.setenv("DATABASE_URL", "postgresql://bot@db/fixbot")
    clean_env.setenv("SESSION_TIMEOUT_MINUTES", "45")
    clean_env.setenv("STORE_MAX_RETRIES", "three")
    clean_env.setenv("REDIS_ENABLED", "yes")
    clean_env.setenv("REDIS_URL", "redis://cache:6379/1")
    clean_env.setenv("LOG_LEVEL", "debug")

    settings = Settings.from_env()
    settings.validate()

    assert settings.session_backend == "postgres"
    assert settings.postgres_dsn == "postgresql://bot@db/fixbot"
    assert settings.session_timeout_minutes == 45
    assert settings.store_max_retries == 3
    assert settings.redis_enabled is True
    assert settings.log_level == "DEBUG"


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"session_backend": "mongo"}, "SESSION_BACKEND"),
        ({"session_backend": "postgres", "postgres_dsn": ""}, "SESSION_POSTGRES_DSN"),
        ({"session_warning_minutes": 30}, "SESSION_WARNING_MINUTES"),
        ({"cache_negative_ttl_seconds": 100.0}, "CACHE_NEGATIVE_TTL_SECONDS"),
        ({"session_cache_ttl_seconds": 0.0}, "SESSION_CACHE_TTL_SECONDS"),
        ({"redis_enabled": True, "redis_url": ""}, "REDIS_URL"),
        ({"store_retry_max_delay_ms": 100}, "STORE_RETRY_MAX_DELAY_MS"),
        ({"history_retention_days": 0}, "HISTORY_RETENTION_DAYS"),
    ],
)
def test_validate_rejects_inconsistent_values(
    clean_env: pytest.MonkeyPatch,
    overrides: dict[str, object],
    message: str,
) -> None:
    settings = replace(Settings.from_env(), **overrides)
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_bom_prefixed_key_is_accepted(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("\ufeffSESSION_TIMEOUT_MINUTES", "45")

    assert Settings.from_env().session_timeout_minutes == 45

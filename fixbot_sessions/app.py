from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

from .cache import CacheLayer, LocalCache, RedisCacheTier, SharedCacheTier
from .clock import SystemClock
from .config import Settings
from .maintenance import MaintenancePlan, MaintenanceScheduler
from .models import DeliveryRegistration, Session, TransitionRecord
from .observability import CoreHealth
from .sessions import IdempotencyLedger, InactivityReaper, OptimisticConcurrencyController, SessionStore
from .sessions.reaper import ClosedCallback, WarningCallback
from .states import SessionState, TransitionOrigin
from .storage import QueryExecutor, build_backend
from .tasks import BackgroundTasks

logger = logging.getLogger("fixbot_sessions")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)


class SessionCore:
    """Facade the conversation layer talks to. One instance per process."""

    def __init__(
        self,
        *,
        settings: Settings,
        backend: Any,
        cache: CacheLayer,
        store: SessionStore,
        controller: OptimisticConcurrencyController,
        ledger: IdempotencyLedger,
        reaper: InactivityReaper,
        tasks: BackgroundTasks,
        health: CoreHealth,
    ) -> None:
        self.settings = settings
        self.backend = backend
        self.cache = cache
        self.store = store
        self.controller = controller
        self.ledger = ledger
        self.reaper = reaper
        self.tasks = tasks
        self.health = health
        self.maintenance = MaintenanceScheduler(
            reaper=reaper,
            ledger=ledger,
            store=store,
            cache=cache,
            health=health,
            plan=MaintenancePlan(
                session_timeout_minutes=settings.session_timeout_minutes,
                session_warning_minutes=settings.session_warning_minutes,
                reaper_interval_seconds=settings.reaper_interval_seconds,
                cache_cleanup_interval_seconds=settings.cache_cleanup_interval_seconds,
                history_retention_days=settings.history_retention_days,
            ),
        )

    async def init(self, *, start_maintenance: bool = False) -> None:
        await self.backend.init()
        logger.info("Session core ready (backend=%s)", self.backend.backend_name)
        if start_maintenance:
            self.maintenance.start()

    async def close(self) -> None:
        await self.maintenance.stop()
        await self.tasks.drain()
        await self.cache.close()
        await self.backend.close()

    async def __aenter__(self) -> "SessionCore":
        await self.init()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def get_session(self, owner_id: str, force_fresh: bool = False) -> Session:
        return await self.store.get(owner_id, force_fresh=force_fresh)

    async def get_session_with_version(self, owner_id: str) -> Session:
        return await self.store.get_with_version(owner_id)

    async def update_session(
        self,
        owner_id: str,
        new_state: SessionState | str,
        payload: Mapping[str, Any] | None = None,
        origin: TransitionOrigin | str = TransitionOrigin.BOT,
        reason: str = "",
        expected_version: int | None = None,
        *,
        equipment_ref: int | None = None,
    ) -> int:
        return await self.controller.update(
            owner_id,
            new_state,
            payload,
            origin,
            reason,
            expected_version,
            equipment_ref=equipment_ref,
        )

    async def register_delivery(self, delivery_id: str | None, owner_id: str | None = "") -> DeliveryRegistration:
        return await self.ledger.register_delivery(delivery_id, owner_id)

    async def record_activity(self, owner_id: str) -> None:
        await self.store.record_activity(owner_id)

    async def record_inbound_message(self, owner_id: str) -> None:
        await self.store.record_inbound_message(owner_id)

    async def sweep_expired_sessions(self, threshold_minutes: int | None = None) -> int:
        minutes = self.settings.session_timeout_minutes if threshold_minutes is None else threshold_minutes
        return await self.reaper.sweep(minutes)

    async def session_history(self, owner_id: str, limit: int = 50) -> list[TransitionRecord]:
        return await self.store.history(owner_id, limit)

    def health_snapshot(self) -> dict[str, object]:
        snapshot = self.health.snapshot()
        snapshot["backend"] = self.backend.backend_name
        snapshot["local_cache_entries"] = len(self.cache.local)
        snapshot["pending_background_tasks"] = self.tasks.pending
        return snapshot


def build_core(
    settings: Settings,
    *,
    clock: Any | None = None,
    backend: Any | None = None,
    shared_cache: SharedCacheTier | None = None,
    on_warning: WarningCallback | None = None,
    on_closed: ClosedCallback | None = None,
) -> SessionCore:
    clock = clock or SystemClock()
    health = CoreHealth()
    backend = backend or build_backend(settings)
    if shared_cache is None and settings.redis_enabled:
        shared_cache = RedisCacheTier(settings.redis_url, key_prefix=settings.redis_key_prefix)

    cache = CacheLayer(
        LocalCache(max_entries=settings.cache_max_local_entries, monotonic=clock.monotonic),
        shared_cache,
        default_ttl=settings.session_cache_ttl_seconds,
        negative_ttl=settings.cache_negative_ttl_seconds,
        shared_timeout=settings.redis_timeout_ms / 1000.0,
        health=health,
    )
    executor = QueryExecutor(
        max_retries=settings.store_max_retries,
        base_delay=settings.store_retry_base_delay_ms / 1000.0,
        max_delay=settings.store_retry_max_delay_ms / 1000.0,
        timeout=settings.store_timeout_seconds,
        health=health,
    )
    tasks = BackgroundTasks(health)
    store = SessionStore(backend, cache, executor, clock)
    controller = OptimisticConcurrencyController(backend, store, executor, health)
    ledger = IdempotencyLedger(
        backend,
        executor,
        clock,
        health,
        retention_minutes=settings.ledger_retention_minutes,
    )
    reaper = InactivityReaper(
        backend,
        store,
        controller,
        executor,
        tasks,
        health,
        batch_size=settings.reaper_batch_size,
        on_warning=on_warning,
        on_closed=on_closed,
    )
    return SessionCore(
        settings=settings,
        backend=backend,
        cache=cache,
        store=store,
        controller=controller,
        ledger=ledger,
        reaper=reaper,
        tasks=tasks,
        health=health,
    )


async def _run_maintenance(settings: Settings) -> None:
    core = build_core(settings)
    await core.init(start_maintenance=True)
    logger.info(
        "Maintenance worker running (timeout=%s min, warning=%s min, every %s s)",
        settings.session_timeout_minutes,
        settings.session_warning_minutes,
        settings.reaper_interval_seconds,
    )
    try:
        await asyncio.Event().wait()
    finally:
        await core.close()


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    settings.validate()
    try:
        asyncio.run(_run_maintenance(settings))
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from .cache import CacheLayer
from .observability import CoreHealth
from .sessions import IdempotencyLedger, InactivityReaper, SessionStore

logger = logging.getLogger("fixbot_sessions")


@dataclass(slots=True)
class MaintenancePlan:
    session_timeout_minutes: int = 30
    session_warning_minutes: int = 25
    reaper_interval_seconds: int = 300
    cache_cleanup_interval_seconds: int = 120
    history_retention_days: int = 90


class MaintenanceScheduler:
    """Periodic housekeeping: inactivity warnings and closes, retention purges, cache eviction.

    Each job failure is logged and counted; the loop keeps running so one bad
    cycle never stops the reaper for the rest of the process lifetime.
    """

    def __init__(
        self,
        *,
        reaper: InactivityReaper,
        ledger: IdempotencyLedger,
        store: SessionStore,
        cache: CacheLayer,
        health: CoreHealth,
        plan: MaintenancePlan,
    ) -> None:
        self.reaper = reaper
        self.ledger = ledger
        self.store = store
        self.cache = cache
        self.health = health
        self.plan = plan
        self._reaper_task: asyncio.Task[None] | None = None
        self._cache_task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._reaper_task is not None and not self._reaper_task.done()

    def start(self) -> None:
        if self.running:
            return
        self._reaper_task = asyncio.create_task(self._run_reaper_loop(), name="session-maintenance")
        self._cache_task = asyncio.create_task(self._run_cache_loop(), name="session-cache-eviction")

    async def stop(self) -> None:
        for task in (self._reaper_task, self._cache_task):
            if task is None:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._reaper_task = None
        self._cache_task = None

    async def _guarded(self, name: str, job: Callable[[], Awaitable[int]]) -> int:
        try:
            return await job()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.health.background_failures += 1
            logger.exception("Maintenance job %s failed", name)
            return 0

    async def run_once(self) -> dict[str, int]:
        started = time.monotonic()
        result = {
            "warned": await self._guarded(
                "inactivity-warning",
                lambda: self.reaper.warn_idle(self.plan.session_warning_minutes),
            ),
            "closed": await self._guarded(
                "inactivity-sweep",
                lambda: self.reaper.sweep(self.plan.session_timeout_minutes),
            ),
            "ledger_purged": await self._guarded("ledger-purge", self.ledger.purge_expired),
            "history_purged": await self._guarded(
                "history-purge",
                lambda: self.store.purge_history(self.plan.history_retention_days),
            ),
        }
        logger.debug("Maintenance cycle finished in %.2fs: %s", time.monotonic() - started, result)
        self.health.log_heartbeat()
        return result

    async def _run_reaper_loop(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self.plan.reaper_interval_seconds)

    async def _run_cache_loop(self) -> None:
        while True:
            await asyncio.sleep(self.plan.cache_cleanup_interval_seconds)
            self.cache.sweep_expired()

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Coroutine

from .observability import CoreHealth

logger = logging.getLogger("fixbot_sessions")


class BackgroundTasks:
    """Tracks detached side effects so their failures are logged instead of lost."""

    def __init__(self, health: CoreHealth) -> None:
        self.health = health
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        self.health.background_failures += 1
        logger.error(
            "Background task %s failed: %s",
            task.get_name(),
            exc,
            exc_info=(type(exc), exc, exc.__traceback__),
        )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float = 10.0) -> None:
        if not self._tasks:
            return
        pending = list(self._tasks)
        _done, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            logger.warning("Cancelling background task %s on shutdown", task.get_name())
            task.cancel()
        for task in still_pending:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

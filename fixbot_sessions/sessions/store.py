from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, List

from ..cache import NOT_FOUND, CacheLayer
from ..clock import SystemClock
from ..errors import TransientStoreError
from ..models import Session, TransitionRecord
from ..states import INITIAL_STATE
from ..storage.executor import QueryExecutor

logger = logging.getLogger("fixbot_sessions")


def require_owner_id(owner_id: object) -> str:
    value = str(owner_id or "").strip()
    if not value:
        raise ValueError("owner_id cannot be empty")
    return value


class SessionStore:
    """Versioned per-owner session rows, read through the cache and created on first contact."""

    KEY_PREFIX = "session:"

    def __init__(
        self,
        backend: Any,
        cache: CacheLayer,
        executor: QueryExecutor,
        clock: Any | None = None,
    ) -> None:
        self.backend = backend
        self.cache = cache
        self.executor = executor
        self.clock = clock or SystemClock()

    @classmethod
    def cache_key(cls, owner_id: str) -> str:
        return f"{cls.KEY_PREFIX}{owner_id}"

    async def get(self, owner_id: str, force_fresh: bool = False) -> Session:
        owner_id = require_owner_id(owner_id)
        if not force_fresh:
            cached = await self.cache.get(self.cache_key(owner_id))
            if cached is not None and cached is not NOT_FOUND:
                try:
                    return Session.from_cache(cached)
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning("Discarding unreadable cached session for %s: %s", owner_id, exc)
                    await self.cache.invalidate(self.cache_key(owner_id))
        return await self._load(owner_id)

    async def get_with_version(self, owner_id: str) -> Session:
        return await self.get(owner_id, force_fresh=True)

    async def _load(self, owner_id: str) -> Session:
        key = self.cache_key(owner_id)
        token = self.cache.begin_fill(key)
        try:
            row = await self.executor.run(
                "fetch_or_create_session",
                lambda: self.backend.fetch_or_create_session(owner_id, INITIAL_STATE.value, self.clock.now()),
            )
            session = Session.from_row(row)
            await self.cache.fill(key, token, session.to_cache())
        except TransientStoreError:
            await self.invalidate(owner_id)
            raise
        finally:
            self.cache.end_fill(key)
        return session

    async def invalidate(self, owner_id: str) -> None:
        await self.cache.invalidate(self.cache_key(owner_id))

    async def record_activity(self, owner_id: str) -> None:
        await self._touch(require_owner_id(owner_id), inbound_message=False)

    async def record_inbound_message(self, owner_id: str) -> None:
        await self._touch(require_owner_id(owner_id), inbound_message=True)

    async def _touch(self, owner_id: str, *, inbound_message: bool) -> None:
        try:
            await self.executor.run(
                "touch_session",
                lambda: self.backend.touch_session(
                    owner_id,
                    INITIAL_STATE.value,
                    self.clock.now(),
                    inbound_message=inbound_message,
                ),
                idempotent=not inbound_message,
            )
        finally:
            await self.invalidate(owner_id)

    async def history(self, owner_id: str, limit: int = 50) -> List[TransitionRecord]:
        owner_id = require_owner_id(owner_id)
        rows = await self.executor.run(
            "list_history",
            lambda: self.backend.list_history(owner_id, max(1, int(limit))),
        )
        return [TransitionRecord.from_row(row) for row in rows]

    async def purge_history(self, retention_days: int) -> int:
        if retention_days < 1:
            raise ValueError("retention_days must be >= 1")
        cutoff = self.clock.now() - timedelta(days=retention_days)
        removed = await self.executor.run("purge_history", lambda: self.backend.purge_history(cutoff))
        if removed:
            logger.info("Purged %s transition history rows older than %s days", removed, retention_days)
        return int(removed)

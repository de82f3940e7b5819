from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Protocol, TypeVar

from ..observability import CoreHealth
from .local import LocalCache

logger = logging.getLogger("fixbot_sessions")

T = TypeVar("T")


class SharedCacheTier(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl: float) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def delete_prefix(self, prefix: str) -> int: ...

    async def close(self) -> None: ...


class _NotFound:
    __slots__ = ()

    def __repr__(self) -> str:
        return "NOT_FOUND"

    def __bool__(self) -> bool:
        return False


NOT_FOUND: Any = _NotFound()

_NOT_FOUND_MARKER = '{"__cache_not_found__":true}'


class CacheLayer:
    """Two-tier cache-aside helper. Never the system of record.

    ``get`` returns the cached value, ``None`` when nothing usable is cached, or
    ``NOT_FOUND`` when a short-lived negative marker is present. Values must be
    JSON serializable; both tiers hold the encoded text.

    The shared tier, when configured and answering within ``shared_timeout``, is
    authoritative among the tiers. The local tier answers only when the shared
    tier is absent or failing, so an invalidation issued by another instance is
    honoured as soon as it reaches the shared tier.

    Values read from the store are written back through ``begin_fill`` and
    ``fill``. An invalidation of the key while that read is in flight makes the
    fill a no-op, so a read that started before a write cannot cache the
    pre-write value after the write has invalidated it.
    """

    def __init__(
        self,
        local: LocalCache,
        shared: SharedCacheTier | None = None,
        *,
        default_ttl: float = 300.0,
        negative_ttl: float = 15.0,
        shared_timeout: float = 0.15,
        health: CoreHealth | None = None,
    ) -> None:
        if default_ttl <= 0:
            raise ValueError("default_ttl must be > 0")
        self.local = local
        self.shared = shared
        self.default_ttl = float(default_ttl)
        # A cached "not found" must never outlive a fraction of the positive TTL.
        self.negative_ttl = max(0.0, min(float(negative_ttl), self.default_ttl / 4))
        self.shared_timeout = float(shared_timeout)
        self.health = health or CoreHealth()
        self._fills: dict[str, int] = {}
        self._generations: dict[str, int] = {}
        self._epoch = 0

    async def _shared_call(self, action: str, key: str, awaitable: Awaitable[T]) -> tuple[bool, T | None]:
        try:
            return True, await asyncio.wait_for(awaitable, timeout=self.shared_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.health.shared_cache_errors += 1
            logger.warning("Shared cache %s failed for %s, using local tier: %s", action, key, exc)
            return False, None

    @staticmethod
    def _decode(raw: str) -> Any:
        if raw == _NOT_FOUND_MARKER:
            return NOT_FOUND
        return json.loads(raw)

    async def get(self, key: str) -> Any:
        raw: str | None = None
        answered = False
        if self.shared is not None:
            answered, raw = await self._shared_call("get", key, self.shared.get(key))
        if not answered:
            raw = self.local.get(key)

        if raw is None:
            self.health.cache_misses += 1
            logger.debug("Cache miss for %s", key)
            return None
        self.health.cache_hits += 1
        logger.debug("Cache hit for %s", key)
        return self._decode(raw)

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        effective_ttl = self.default_ttl if ttl is None else float(ttl)
        encoded = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        await self._write(key, encoded, effective_ttl)

    async def set_not_found(self, key: str, ttl: float | None = None) -> None:
        effective_ttl = self.negative_ttl if ttl is None else min(float(ttl), self.negative_ttl)
        if effective_ttl <= 0:
            await self.invalidate(key)
            return
        await self._write(key, _NOT_FOUND_MARKER, effective_ttl)

    async def _write(self, key: str, encoded: str, ttl: float) -> None:
        self.local.set(key, encoded, ttl)
        if self.shared is not None:
            await self._shared_call("set", key, self.shared.set(key, encoded, ttl))

    def begin_fill(self, key: str) -> tuple[int, int]:
        self._fills[key] = self._fills.get(key, 0) + 1
        return self._fill_token(key)

    def end_fill(self, key: str) -> None:
        remaining = self._fills.get(key, 0) - 1
        if remaining > 0:
            self._fills[key] = remaining
            return
        self._fills.pop(key, None)
        self._generations.pop(key, None)

    def _fill_token(self, key: str) -> tuple[int, int]:
        return self._epoch, self._generations.get(key, 0)

    async def fill(self, key: str, token: tuple[int, int], value: Any, ttl: float | None = None) -> bool:
        """Cache a value read from the store unless ``key`` was invalidated since ``begin_fill``."""
        if token != self._fill_token(key):
            self.health.stale_fills_skipped += 1
            logger.debug("Skipping cache fill for %s: invalidated during the store read", key)
            return False
        await self.set(key, value, ttl)
        if token != self._fill_token(key):
            # Invalidated while the write was in flight.
            self.health.stale_fills_skipped += 1
            await self.invalidate(key)
            return False
        return True

    async def invalidate(self, key: str) -> None:
        if key in self._fills:
            self._generations[key] = self._generations.get(key, 0) + 1
        self.local.delete(key)
        if self.shared is not None:
            await self._shared_call("delete", key, self.shared.delete(key))

    async def invalidate_by_prefix(self, prefix: str) -> int:
        if self._fills:
            self._epoch += 1
        removed = self.local.delete_prefix(prefix)
        if self.shared is not None:
            answered, shared_removed = await self._shared_call(
                "delete_prefix", f"{prefix}*", self.shared.delete_prefix(prefix)
            )
            if answered and shared_removed:
                removed = max(removed, int(shared_removed))
        return removed

    def sweep_expired(self) -> int:
        removed = self.local.sweep_expired()
        if removed:
            logger.debug("Evicted %s expired local cache entries", removed)
        return removed

    async def close(self) -> None:
        self.local.clear()
        if self.shared is not None:
            await self.shared.close()

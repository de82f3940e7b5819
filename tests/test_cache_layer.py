from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from fixbot_sessions.cache import NOT_FOUND, CacheLayer, LocalCache, RedisCacheTier  # noqa: E402
from fixbot_sessions.clock import FrozenClock  # noqa: E402
from fixbot_sessions.observability import CoreHealth  # noqa: E402


class _DictTier:
    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, float] = {}
        self.closed = False

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str, ttl: float) -> None:
        self.data[key] = value
        self.ttls[key] = ttl

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)

    async def delete_prefix(self, prefix: str) -> int:
        doomed = [key for key in self.data if key.startswith(prefix)]
        for key in doomed:
            del self.data[key]
        return len(doomed)

    async def close(self) -> None:
        self.closed = True


class _BrokenTier(_DictTier):
    async def get(self, key: str) -> str | None:
        raise ConnectionError("redis down")

    async def set(self, key: str, value: str, ttl: float) -> None:
        raise ConnectionError("redis down")

    async def delete(self, key: str) -> None:
        raise ConnectionError("redis down")


class _SlowTier(_DictTier):
    async def get(self, key: str) -> str | None:
        await asyncio.sleep(1.0)
        return await super().get(key)


def _layer(clock: FrozenClock, shared: object | None = None, **kwargs) -> CacheLayer:  # type: ignore[no-untyped-def]
    local = LocalCache(max_entries=kwargs.pop("max_entries", 100), monotonic=clock.monotonic)
    return CacheLayer(local, shared, health=CoreHealth(), **kwargs)  # type: ignore[arg-type]


def test_local_entries_expire_after_ttl() -> None:
    async def scenario() -> None:
        clock = FrozenClock()
        cache = _layer(clock, default_ttl=60.0)
        await cache.set("session:a", {"state": "INICIO"})

        clock.advance(seconds=59)
        assert await cache.get("session:a") == {"state": "INICIO"}
        clock.advance(seconds=1)
        assert await cache.get("session:a") is None
        assert cache.health.cache_hits == 1
        assert cache.health.cache_misses == 1

    asyncio.run(scenario())


def test_local_tier_evicts_oldest_entries_over_bound() -> None:
    clock = FrozenClock()
    local = LocalCache(max_entries=3, monotonic=clock.monotonic)
    for key in ("a", "b", "c"):
        local.set(key, '"v"', 60)
    local.set("a", '"refreshed"', 60)
    local.set("d", '"v"', 60)

    assert len(local) == 3
    assert local.get("b") is None
    assert local.get("a") == '"refreshed"'
    assert local.get("d") == '"v"'


def test_sweep_expired_drops_only_stale_entries() -> None:
    async def scenario() -> None:
        clock = FrozenClock()
        cache = _layer(clock, default_ttl=60.0)
        await cache.set("old", 1)
        clock.advance(seconds=30)
        await cache.set("new", 2)
        clock.advance(seconds=31)

        assert cache.sweep_expired() == 1
        assert len(cache.local) == 1
        assert await cache.get("new") == 2

    asyncio.run(scenario())


def test_negative_results_are_short_lived() -> None:
    async def scenario() -> None:
        clock = FrozenClock()
        cache = _layer(clock, default_ttl=300.0, negative_ttl=200.0)
        assert cache.negative_ttl == 75.0

        await cache.set_not_found("equipment:4401", ttl=3600)
        assert await cache.get("equipment:4401") is NOT_FOUND
        clock.advance(seconds=75)
        assert await cache.get("equipment:4401") is None

    asyncio.run(scenario())


def test_negative_caching_can_be_disabled() -> None:
    async def scenario() -> None:
        clock = FrozenClock()
        cache = _layer(clock, default_ttl=300.0, negative_ttl=0.0)
        await cache.set("equipment:1", {"id": 1})
        await cache.set_not_found("equipment:1")
        assert await cache.get("equipment:1") is None

    asyncio.run(scenario())


def test_writes_reach_both_tiers_and_shared_answer_wins() -> None:
    async def scenario() -> None:
        clock = FrozenClock()
        shared = _DictTier()
        cache = _layer(clock, shared, default_ttl=120.0)

        await cache.set("session:+52", {"version": 3})
        assert shared.data["session:+52"] == '{"version":3}'
        assert shared.ttls["session:+52"] == 120.0
        assert cache.local.get("session:+52") == '{"version":3}'

        # Another instance invalidated the shared entry; the local copy must not be served.
        del shared.data["session:+52"]
        assert await cache.get("session:+52") is None

    asyncio.run(scenario())


def test_shared_tier_failure_falls_back_to_local() -> None:
    async def scenario() -> None:
        clock = FrozenClock()
        cache = _layer(clock, _BrokenTier())

        await cache.set("session:+52", {"version": 1})
        assert await cache.get("session:+52") == {"version": 1}
        await cache.invalidate("session:+52")
        assert await cache.get("session:+52") is None
        assert cache.health.shared_cache_errors == 4

    asyncio.run(scenario())


def test_slow_shared_tier_is_bounded_by_timeout() -> None:
    async def scenario() -> None:
        clock = FrozenClock()
        shared = _SlowTier()
        cache = _layer(clock, shared, shared_timeout=0.01)
        cache.local.set("session:+52", '{"version":7}', 60)

        assert await asyncio.wait_for(cache.get("session:+52"), timeout=0.5) == {"version": 7}
        assert cache.health.shared_cache_errors == 1

    asyncio.run(scenario())


def test_invalidate_by_prefix_clears_both_tiers() -> None:
    async def scenario() -> None:
        clock = FrozenClock()
        shared = _DictTier()
        cache = _layer(clock, shared)
        await cache.set("session:+1", 1)
        await cache.set("session:+2", 2)
        await cache.set("equipment:9", 9)

        assert await cache.invalidate_by_prefix("session:") == 2
        assert sorted(shared.data) == ["equipment:9"]
        assert await cache.get("session:+1") is None
        assert await cache.get("equipment:9") == 9

        await cache.close()
        assert shared.closed is True
        assert len(cache.local) == 0

    asyncio.run(scenario())


def test_cache_layer_requires_positive_ttl() -> None:
    with pytest.raises(ValueError):
        _layer(FrozenClock(), default_ttl=0)


class _FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.set_calls: list[tuple[str, str, int]] = []
        self.closed = False

    async def get(self, key: str) -> str | None:
        return self.values.get(key)

    async def set(self, key: str, value: str, px: int) -> None:
        self.set_calls.append((key, value, px))
        self.values[key] = value

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan_iter(self, match: str, count: int):  # type: ignore[no-untyped-def]
        prefix = match.rstrip("*")
        for key in list(self.values):
            if key.startswith(prefix):
                yield key

    async def aclose(self) -> None:
        self.closed = True


def test_redis_tier_namespaces_keys_and_uses_millisecond_ttl() -> None:
    async def scenario() -> None:
        client = _FakeRedis()
        tier = RedisCacheTier("redis://localhost:6379/0", key_prefix="fixbot:", client=client)

        await tier.set("session:+52", '{"v":1}', 1.5)
        await tier.set("session:+53", '{"v":2}', 300)
        assert client.set_calls[0] == ("fixbot:session:+52", '{"v":1}', 1500)
        assert await tier.get("session:+52") == '{"v":1}'

        assert await tier.delete_prefix("session:") == 2
        assert client.values == {}

        await tier.close()
        assert client.closed is True

    asyncio.run(scenario())


def test_fill_is_dropped_when_key_is_invalidated_during_the_read() -> None:
    async def scenario() -> None:
        clock = FrozenClock()
        shared = _DictTier()
        cache = _layer(clock, shared)

        token = cache.begin_fill("session:a")
        await cache.invalidate("session:a")
        assert await cache.fill("session:a", token, {"version": 0}) is False
        cache.end_fill("session:a")

        assert await cache.get("session:a") is None
        assert shared.data == {}
        assert cache.health.stale_fills_skipped == 1

        token = cache.begin_fill("session:a")
        assert await cache.fill("session:a", token, {"version": 1}) is True
        cache.end_fill("session:a")
        assert await cache.get("session:a") == {"version": 1}

    asyncio.run(scenario())


def test_prefix_invalidation_also_drops_in_flight_fills() -> None:
    async def scenario() -> None:
        cache = _layer(FrozenClock())
        token = cache.begin_fill("session:b")
        await cache.invalidate_by_prefix("session:")

        assert await cache.fill("session:b", token, {"version": 0}) is False
        cache.end_fill("session:b")
        assert cache.begin_fill("session:b") != token

    asyncio.run(scenario())

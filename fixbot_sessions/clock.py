from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SystemClock:
    """Wall clock for timestamps plus a monotonic source for cache TTLs."""

    def now(self) -> datetime:
        return utc_now()

    def monotonic(self) -> float:
        return time.monotonic()


class FrozenClock:
    """Clock that only moves when told to. Used for deterministic tests and replays."""

    def __init__(self, start: datetime | None = None) -> None:
        current = start or datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        self._now = current
        self._monotonic = 1000.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, *, seconds: float = 0.0, minutes: float = 0.0) -> None:
        delta = float(seconds) + float(minutes) * 60.0
        if delta < 0:
            raise ValueError("FrozenClock cannot move backwards")
        self._now = self._now + timedelta(seconds=delta)
        self._monotonic += delta

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable


@dataclass(slots=True)
class _Entry:
    value: str
    stored_at: float
    ttl: float


class LocalCache:
    """Process-local tier: insertion-ordered map with per-entry TTL and a hard size bound."""

    def __init__(self, *, max_entries: int = 10000, monotonic: Callable[[], float]) -> None:
        self.max_entries = max(1, int(max_entries))
        self._monotonic = monotonic
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._monotonic() - entry.stored_at >= entry.ttl:
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: str, value: str, ttl: float) -> None:
        if ttl <= 0:
            self._entries.pop(key, None)
            return
        # Re-insert so a refreshed key counts as newest for eviction.
        self._entries.pop(key, None)
        self._entries[key] = _Entry(value=value, stored_at=self._monotonic(), ttl=float(ttl))
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        doomed = [key for key in self._entries if key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def sweep_expired(self) -> int:
        now = self._monotonic()
        doomed = [key for key, entry in self._entries.items() if now - entry.stored_at >= entry.ttl]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

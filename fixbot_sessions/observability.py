from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

logger = logging.getLogger("fixbot_sessions")


@dataclass(slots=True)
class CoreHealth:
    cache_hits: int = 0
    cache_misses: int = 0
    shared_cache_errors: int = 0
    stale_fills_skipped: int = 0
    conflicts: int = 0
    transient_retries: int = 0
    transient_failures: int = 0
    duplicate_deliveries: int = 0
    ledger_degraded: int = 0
    last_ledger_error: str = ""
    sessions_swept: int = 0
    sessions_warned: int = 0
    sweep_failures: int = 0
    background_failures: int = 0

    def snapshot(self) -> dict[str, object]:
        return asdict(self)

    def log_heartbeat(self) -> None:
        logger.debug(
            "[health] cache hit=%s miss=%s shared_err=%s stale_fill=%s conflicts=%s transient retry=%s fail=%s "
            "duplicates=%s ledger_degraded=%s swept=%s warned=%s bg_fail=%s",
            self.cache_hits,
            self.cache_misses,
            self.shared_cache_errors,
            self.stale_fills_skipped,
            self.conflicts,
            self.transient_retries,
            self.transient_failures,
            self.duplicate_deliveries,
            self.ledger_degraded,
            self.sessions_swept,
            self.sessions_warned,
            self.background_failures,
        )

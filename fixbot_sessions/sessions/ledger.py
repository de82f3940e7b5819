from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from ..clock import SystemClock
from ..errors import IdempotencyLedgerUnavailable
from ..models import DeliveryRegistration
from ..observability import CoreHealth
from ..storage.executor import QueryExecutor

logger = logging.getLogger("fixbot_sessions")


class IdempotencyLedger:
    """Durable duplicate detection for at-least-once deliveries.

    Each registration is a single upsert, so two workers receiving the same
    delivery concurrently cannot both see it as new. Ids that repeat after the
    retention horizon are treated as new deliveries.
    """

    def __init__(
        self,
        backend: Any,
        executor: QueryExecutor,
        clock: Any | None = None,
        health: CoreHealth | None = None,
        *,
        retention_minutes: int = 60,
    ) -> None:
        self.backend = backend
        self.executor = executor
        self.clock = clock or SystemClock()
        self.health = health or executor.health
        self.retention_minutes = int(retention_minutes)

    async def register_delivery(
        self,
        delivery_id: str | None,
        owner_id: str | None = "",
        *,
        fail_open: bool = True,
    ) -> DeliveryRegistration:
        now = self.clock.now()
        delivery = str(delivery_id or "").strip()
        if not delivery:
            return DeliveryRegistration(is_duplicate=False, retry_count=0, first_seen=now)
        owner = str(owner_id or "").strip()

        try:
            row = await self._upsert(delivery, owner, now)
        except IdempotencyLedgerUnavailable as exc:
            if not fail_open:
                raise
            self.health.ledger_degraded += 1
            self.health.last_ledger_error = str(exc.__cause__ or exc)
            logger.error(
                "Idempotency ledger unavailable for delivery %s (owner %s); processing without duplicate check",
                delivery,
                owner or "-",
                exc_info=exc,
            )
            return DeliveryRegistration(is_duplicate=False, retry_count=0, first_seen=now, degraded=True)

        retry_count = int(row["retry_count"])
        registration = DeliveryRegistration(
            is_duplicate=retry_count > 0,
            retry_count=retry_count,
            first_seen=row["first_seen"],
        )
        if registration.is_duplicate:
            self.health.duplicate_deliveries += 1
            logger.info("Duplicate delivery %s for %s (retry %s)", delivery, owner or "-", retry_count)
        return registration

    async def _upsert(self, delivery_id: str, owner_id: str, now: datetime) -> dict:
        try:
            return await self.executor.run(
                "register_delivery",
                lambda: self.backend.upsert_delivery(delivery_id, owner_id, now),
                idempotent=False,
            )
        except Exception as exc:
            raise IdempotencyLedgerUnavailable(delivery_id) from exc

    async def purge_expired(self, retention_minutes: int | None = None) -> int:
        minutes = self.retention_minutes if retention_minutes is None else int(retention_minutes)
        if minutes < 1:
            raise ValueError("retention_minutes must be >= 1")
        cutoff = self.clock.now() - timedelta(minutes=minutes)
        removed = await self.executor.run("purge_ledger", lambda: self.backend.purge_ledger(cutoff))
        if removed:
            logger.info("Purged %s idempotency records last seen before %s", removed, cutoff.isoformat())
        return int(removed)

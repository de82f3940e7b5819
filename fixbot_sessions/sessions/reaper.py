from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, List

from ..errors import ConcurrencyConflict, TransientStoreError
from ..models import IdleSession
from ..observability import CoreHealth
from ..states import RESTING_STATES, TIMEOUT_STATE, SessionState, TransitionOrigin
from ..storage.executor import QueryExecutor
from ..tasks import BackgroundTasks
from .controller import OptimisticConcurrencyController
from .store import SessionStore

logger = logging.getLogger("fixbot_sessions")

WarningCallback = Callable[[IdleSession], Awaitable[None]]
ClosedCallback = Callable[[str, SessionState], Awaitable[None]]


class InactivityReaper:
    def __init__(
        self,
        backend: Any,
        store: SessionStore,
        controller: OptimisticConcurrencyController,
        executor: QueryExecutor,
        tasks: BackgroundTasks,
        health: CoreHealth | None = None,
        *,
        batch_size: int = 500,
        on_warning: WarningCallback | None = None,
        on_closed: ClosedCallback | None = None,
    ) -> None:
        self.backend = backend
        self.store = store
        self.controller = controller
        self.executor = executor
        self.tasks = tasks
        self.health = health or executor.health
        self.batch_size = max(1, int(batch_size))
        self.on_warning = on_warning
        self.on_closed = on_closed

    @staticmethod
    def _excluded_states() -> List[str]:
        return sorted(state.value for state in RESTING_STATES)

    async def sweep(self, threshold_minutes: int) -> int:
        """Close sessions idle for at least ``threshold_minutes``. Returns how many were closed.

        Candidates are read with their version and closed through the normal
        compare-and-set path. A conflict means the owner acted after the scan;
        that session is skipped and left for a later sweep.
        """
        if threshold_minutes <= 0:
            raise ValueError("threshold_minutes must be > 0")
        cutoff = self.store.clock.now() - timedelta(minutes=threshold_minutes)
        rows = await self.executor.run(
            "find_idle_sessions",
            lambda: self.backend.find_idle_sessions(cutoff, self._excluded_states(), self.batch_size),
        )
        candidates = [IdleSession.from_row(row) for row in rows]

        closed = 0
        for candidate in candidates:
            try:
                await self.controller.update(
                    candidate.owner_id,
                    TIMEOUT_STATE,
                    None,
                    TransitionOrigin.TIMER,
                    f"Inactive for more than {threshold_minutes} minutes",
                    expected_version=candidate.version,
                    idle_before=cutoff,
                )
            except ConcurrencyConflict:
                logger.debug("Skipping %s: activity after the inactivity scan", candidate.owner_id)
                continue
            except TransientStoreError as exc:
                self.health.sweep_failures += 1
                logger.warning("Could not close idle session %s: %s", candidate.owner_id, exc)
                continue
            closed += 1
            if self.on_closed is not None:
                self.tasks.spawn(
                    self.on_closed(candidate.owner_id, candidate.state),
                    name=f"session-closed:{candidate.owner_id}",
                )

        self.health.sessions_swept += closed
        if candidates:
            logger.info(
                "Inactivity sweep closed %s of %s idle session(s) (threshold %s min)",
                closed,
                len(candidates),
                threshold_minutes,
            )
        return closed

    async def warn_idle(self, warning_minutes: int) -> int:
        """Claim idle, not-yet-warned sessions and notify each one once."""
        if warning_minutes <= 0:
            raise ValueError("warning_minutes must be > 0")
        now = self.store.clock.now()
        cutoff = now - timedelta(minutes=warning_minutes)
        rows = await self.executor.run(
            "claim_warning_candidates",
            lambda: self.backend.claim_warning_candidates(cutoff, self._excluded_states(), now, self.batch_size),
            idempotent=False,
        )
        claimed = [IdleSession.from_row(row) for row in rows]
        for session in claimed:
            await self.store.invalidate(session.owner_id)
            if self.on_warning is not None:
                self.tasks.spawn(self.on_warning(session), name=f"session-warning:{session.owner_id}")

        self.health.sessions_warned += len(claimed)
        if claimed:
            logger.info("Claimed %s session(s) for an inactivity warning", len(claimed))
        return len(claimed)

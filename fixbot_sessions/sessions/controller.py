from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Mapping

from ..errors import ConcurrencyConflict
from ..models import encode_payload
from ..observability import CoreHealth
from ..states import INITIAL_STATE, SessionState, TransitionOrigin, clears_session_data, coerce_origin, coerce_state
from ..storage.executor import QueryExecutor
from .store import SessionStore, require_owner_id

logger = logging.getLogger("fixbot_sessions")


def _validate_expected_version(value: object) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"expected_version must be an int or None, got {type(value).__name__}")
    if value < 0:
        raise ValueError("expected_version must be >= 0")
    return value


def _validate_equipment_ref(value: object) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"equipment_ref must be an int or None, got {type(value).__name__}")
    return value


class OptimisticConcurrencyController:
    """Compare-and-set writer for sessions plus the append-only transition history.

    Every write is one store transaction: read version and state, check the
    caller's ``expected_version``, write the new state with ``version + 1`` and
    append the history row. Nothing is locked in process; two callers holding
    the same version race in the store and exactly one wins.

    Passing ``expected_version=None`` is last-writer-wins. It exists for
    best-effort background updates and gives no protection against a
    concurrent user-driven transition.
    """

    def __init__(
        self,
        backend: Any,
        store: SessionStore,
        executor: QueryExecutor,
        health: CoreHealth | None = None,
    ) -> None:
        self.backend = backend
        self.store = store
        self.executor = executor
        self.health = health or executor.health

    async def update(
        self,
        owner_id: str,
        new_state: SessionState | str,
        payload: Mapping[str, Any] | None = None,
        origin: TransitionOrigin | str = TransitionOrigin.BOT,
        reason: str = "",
        expected_version: int | None = None,
        *,
        equipment_ref: int | None = None,
        idle_before: datetime | None = None,
    ) -> int:
        owner_id = require_owner_id(owner_id)
        state = coerce_state(new_state)
        origin_value = coerce_origin(origin)
        expected = _validate_expected_version(expected_version)
        equipment = _validate_equipment_ref(equipment_ref)
        if clears_session_data(state):
            payload = None
            equipment = None
        payload_json = encode_payload(payload)
        reason_text = str(reason or "").strip()
        # Shared by every retry of this call; a retry that finds it in the history reports that commit.
        attempt_id = uuid.uuid4().hex

        try:
            result = await self.executor.run(
                "update_session",
                lambda: self.backend.apply_transition(
                    owner_id=owner_id,
                    new_state=state.value,
                    payload_json=payload_json,
                    equipment_ref=equipment,
                    origin=origin_value.value,
                    reason=reason_text,
                    expected_version=expected,
                    initial_state=INITIAL_STATE.value,
                    now=self.store.clock.now(),
                    idle_before=idle_before,
                    attempt_id=attempt_id,
                ),
            )
        finally:
            # Success, conflict or failure: the next read must go to the store.
            await self.store.invalidate(owner_id)

        if result["status"] != "applied":
            self.health.conflicts += 1
            logger.info(
                "Concurrency conflict on %s -> %s (expected version %s, store has %s)",
                owner_id,
                state.value,
                expected,
                result.get("version"),
            )
            raise ConcurrencyConflict(owner_id, expected, result.get("version"))

        version = int(result["version"])
        if result.get("replayed"):
            logger.info("Update of %s to %s had already committed as version %s", owner_id, state.value, version)
        if expected is None:
            logger.debug("Unconditional update of %s to %s (version %s)", owner_id, state.value, version)
        else:
            logger.debug("Session %s: %s -> %s (version %s)", owner_id, result["previous_state"], state.value, version)
        return version

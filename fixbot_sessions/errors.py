from __future__ import annotations


class SessionCoreError(Exception):
    """Base class for failures the session core reports to its callers."""

    code = "SESSION_CORE_ERROR"
    retryable = False


class ConcurrencyConflict(SessionCoreError):
    """Another writer committed first; re-read the session and decide again."""

    code = "CONCURRENCY_CONFLICT"
    retryable = True

    def __init__(
        self,
        owner_id: str,
        expected_version: int | None,
        actual_version: int | None = None,
        operation: str = "update_session",
    ) -> None:
        self.owner_id = owner_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        self.operation = operation
        super().__init__(
            f"Concurrency conflict on {owner_id} during {operation}: "
            f"expected version {expected_version}, store has {actual_version}"
        )


class TransientStoreError(SessionCoreError):
    code = "TRANSIENT_STORE_ERROR"
    retryable = True

    def __init__(self, operation: str, attempts: int) -> None:
        self.operation = operation
        self.attempts = attempts
        super().__init__(f"Store operation {operation} failed after {attempts} attempt(s)")


class IdempotencyLedgerUnavailable(SessionCoreError):
    code = "IDEMPOTENCY_LEDGER_UNAVAILABLE"

    def __init__(self, delivery_id: str) -> None:
        self.delivery_id = delivery_id
        super().__init__(f"Idempotency ledger write failed for delivery {delivery_id}")


class InvalidStateTransition(SessionCoreError, ValueError):
    code = "INVALID_STATE_TRANSITION"

    def __init__(self, value: object) -> None:
        self.value = value
        super().__init__(f"Unknown session state: {value!r}")

from __future__ import annotations

import asyncio
import logging
import random
import sqlite3
from typing import Awaitable, Callable, TypeVar

try:
    import asyncpg
except Exception:  # pragma: no cover - optional dependency at runtime
    asyncpg = None  # type: ignore[assignment]

from ..errors import SessionCoreError, TransientStoreError
from ..observability import CoreHealth

logger = logging.getLogger("fixbot_sessions")

T = TypeVar("T")

_SQLITE_TRANSIENT_MARKERS = ("locked", "busy", "disk i/o")


def is_transient_error(exc: BaseException) -> bool:
    """True for failures that may succeed on a plain retry (timeouts, dropped links, lock contention)."""
    if isinstance(exc, SessionCoreError):
        return False
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, sqlite3.OperationalError):
        message = str(exc).casefold()
        return any(marker in message for marker in _SQLITE_TRANSIENT_MARKERS)
    if asyncpg is not None:
        if isinstance(
            exc,
            (
                asyncpg.exceptions.PostgresConnectionError,
                asyncpg.exceptions.InterfaceError,
                asyncpg.exceptions.TooManyConnectionsError,
                asyncpg.exceptions.SerializationError,
                asyncpg.exceptions.DeadlockDetectedError,
            ),
        ):
            return True
    # OSError covers socket-level failures; ConnectionError above is its most common subclass.
    return isinstance(exc, OSError)


def is_never_applied_error(exc: BaseException) -> bool:
    """True for transient failures raised before the statement could commit.

    A dropped link or a timeout may hide a commit whose reply was lost; those
    never qualify.
    """
    if not is_transient_error(exc):
        return False
    if isinstance(exc, ConnectionRefusedError):
        return True
    if isinstance(exc, sqlite3.OperationalError):
        message = str(exc).casefold()
        return "locked" in message or "busy" in message
    if asyncpg is not None:
        return isinstance(
            exc,
            (
                asyncpg.exceptions.TooManyConnectionsError,
                asyncpg.exceptions.SerializationError,
                asyncpg.exceptions.DeadlockDetectedError,
            ),
        )
    return False


class QueryExecutor:
    """Runs store calls with a per-attempt timeout and bounded backoff for transient failures.

    ``max_retries`` is the number of retries after the first attempt. Delays grow
    exponentially from ``base_delay`` up to ``max_delay`` with +/-25% jitter so
    workers that failed together do not retry together.

    Calls that are not safe to repeat pass ``idempotent=False``; they are
    retried only when the failure proves the first attempt never landed.
    """

    def __init__(
        self,
        *,
        max_retries: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 5.0,
        timeout: float = 15.0,
        health: CoreHealth | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_retries = max(0, int(max_retries))
        self.base_delay = max(0.0, float(base_delay))
        self.max_delay = max(self.base_delay, float(max_delay))
        self.timeout = float(timeout)
        self.health = health or CoreHealth()
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        raw = min(self.max_delay, self.base_delay * (2 ** max(0, attempt - 1)))
        jitter = raw * 0.25 * (random.random() * 2.0 - 1.0)
        return max(0.0, raw + jitter)

    async def run(self, operation: str, fn: Callable[[], Awaitable[T]], *, idempotent: bool = True) -> T:
        attempts = self.max_retries + 1
        last_error: BaseException | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(fn(), timeout=self.timeout)
            except asyncio.CancelledError:
                raise
            except SessionCoreError:
                raise
            except Exception as exc:
                if not is_transient_error(exc):
                    raise
                last_error = exc
                if attempt >= attempts:
                    break
                if not idempotent and not is_never_applied_error(exc):
                    logger.warning(
                        "Store operation %s failed after it may have been applied, not retrying: %s",
                        operation,
                        exc,
                    )
                    attempts = attempt
                    break
                delay = self.backoff_delay(attempt)
                self.health.transient_retries += 1
                logger.warning(
                    "Store operation %s failed (attempt %s/%s): %s; retrying in %.2fs",
                    operation,
                    attempt,
                    attempts,
                    exc,
                    delay,
                )
                await self._sleep(delay)

        self.health.transient_failures += 1
        logger.error(
            "Store operation %s exhausted %s attempt(s)",
            operation,
            attempts,
            exc_info=last_error,
        )
        raise TransientStoreError(operation, attempts) from last_error

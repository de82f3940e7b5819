from .app import SessionCore, build_core, configure_logging
from .config import Settings
from .errors import (
    ConcurrencyConflict,
    IdempotencyLedgerUnavailable,
    InvalidStateTransition,
    SessionCoreError,
    TransientStoreError,
)
from .models import DeliveryRegistration, Session, TransitionRecord
from .states import SessionState, TransitionOrigin

__all__ = [
    "ConcurrencyConflict",
    "DeliveryRegistration",
    "IdempotencyLedgerUnavailable",
    "InvalidStateTransition",
    "Session",
    "SessionCore",
    "SessionCoreError",
    "SessionState",
    "Settings",
    "TransientStoreError",
    "TransitionOrigin",
    "TransitionRecord",
    "build_core",
    "configure_logging",
]

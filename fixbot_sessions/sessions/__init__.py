from .controller import OptimisticConcurrencyController
from .ledger import IdempotencyLedger
from .reaper import InactivityReaper
from .store import SessionStore

__all__ = [
    "IdempotencyLedger",
    "InactivityReaper",
    "OptimisticConcurrencyController",
    "SessionStore",
]

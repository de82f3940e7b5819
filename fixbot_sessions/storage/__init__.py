from .executor import QueryExecutor, is_never_applied_error, is_transient_error
from .factory import build_backend
from .store import SqliteSessionBackend

__all__ = ["QueryExecutor", "SqliteSessionBackend", "build_backend", "is_never_applied_error", "is_transient_error"]

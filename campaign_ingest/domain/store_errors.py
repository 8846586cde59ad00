from __future__ import annotations

from typing import Any


TRANSIENT_SQLSTATES = frozenset(
    {
        "40001",  # serialization_failure
        "40P01",  # deadlock_detected
        "55P03",  # lock_not_available (lock_timeout)
        "57014",  # query_canceled (statement_timeout)
        "57P01",  # admin_shutdown
        "08000",
        "08003",
        "08006",
    }
)
TRANSIENT_SIGNATURES = (
    "deadlock",
    "could not serialize",
    "serialization failure",
    "lock timeout",
    "lock not available",
    "canceling statement due to statement timeout",
    "canceling statement due to lock timeout",
    "timeout",
    "connection reset",
    "connection refused",
    "server closed the connection",
    "temporar",
)


class StoreError(Exception):
    """Non-retryable failure raised by an event store backend."""

    retryable = False

    def __init__(self, message: str, *, sqlstate: str | None = None):
        super().__init__(message)
        self.sqlstate = sqlstate

    @property
    def category(self) -> str:
        return "transient" if self.retryable else "permanent"


class TransientStoreError(StoreError):
    """Lock wait timeout, deadlock, serialization conflict or lost connection."""

    retryable = True


class LockTimeoutError(TransientStoreError):
    pass


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, StoreError):
        return exc.retryable
    sqlstate = getattr(exc, "pgcode", None) or getattr(exc, "sqlstate", None)
    if sqlstate in TRANSIENT_SQLSTATES:
        return True
    text = str(exc).lower()
    return any(signature in text for signature in TRANSIENT_SIGNATURES)


def store_error_detail(*, operation: str, exc: StoreError) -> dict[str, Any]:
    return {
        "type": "store_error",
        "operation": operation,
        "category": exc.category,
        "retryable": exc.retryable,
        "sqlstate": exc.sqlstate,
        "message": str(exc),
    }

"""
Exceptions raised by the connection pool.

Only capacity, timeout, closed-pool and misuse conditions reach callers.
Validation and eviction problems are handled inside the pool and show up
here only as the cause of a ConnectError once borrow retries run out.
"""

from typing import Optional


class PoolError(Exception):
    """Base exception for connection pool errors."""

    def __init__(self, message: str, pool: Optional[str] = None, slot_id: Optional[int] = None):
        self.message = message
        self.pool = pool
        self.slot_id = slot_id

        full_message = message
        details = []
        if pool is not None:
            details.append(f"pool={pool}")
        if slot_id is not None:
            details.append(f"slot={slot_id}")
        if details:
            full_message += f" [{', '.join(details)}]"

        super().__init__(full_message)


class ConfigurationError(PoolError, ValueError):
    """Exception raised when the pool configuration is missing or invalid."""
    pass


class ConnectError(PoolError):
    """Exception raised when a physical connection could not be opened."""
    pass


class PoolTimeoutError(PoolError, TimeoutError):
    """Exception raised when a borrow is not satisfied within its wait budget."""
    pass


class InvalidSlotError(PoolError):
    """Exception raised on release of an unknown, foreign or already returned slot."""
    pass


class ValidationFailure(PoolError):
    """Signal that a connection failed its liveness probe."""
    pass


class PoolClosedError(PoolError):
    """Exception raised when the pool has been shut down."""
    pass

"""
dbpool: asynchronous database connection pooling.

Lends pre-established connections to callers, validates and evicts them in
the background, and keeps the number of open connections bounded.
"""

__version__ = "0.1.0"

from .config import Credentials, PoolConfig
from .errors import (
    ConfigurationError,
    ConnectError,
    InvalidSlotError,
    PoolClosedError,
    PoolError,
    PoolTimeoutError,
    ValidationFailure,
)
from .factory import CallableConnectionFactory, ConnectionFactory
from .observers import LogObserver, ObserverRegistry, PoolEvent, PoolObserver, create_observer
from .pool import ConnectionPool
from .slot import ConnectionSlot, SlotState, StatementCache
from .sweeper import EvictionSweeper, SweepSummary
from .validation import ValidationContext, ValidationPolicy, ValidationResult

__all__ = [
    "CallableConnectionFactory",
    "ConfigurationError",
    "ConnectError",
    "ConnectionFactory",
    "ConnectionPool",
    "ConnectionSlot",
    "Credentials",
    "EvictionSweeper",
    "InvalidSlotError",
    "LogObserver",
    "ObserverRegistry",
    "PoolClosedError",
    "PoolConfig",
    "PoolError",
    "PoolEvent",
    "PoolObserver",
    "PoolTimeoutError",
    "SlotState",
    "StatementCache",
    "SweepSummary",
    "ValidationContext",
    "ValidationFailure",
    "ValidationPolicy",
    "ValidationResult",
    "create_observer",
]

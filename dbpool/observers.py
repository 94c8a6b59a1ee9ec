"""
Pool event observers.

Observers are notified of borrow, return, eviction, abandonment, validation
failure and sweep events. They only observe: an exception raised by an
observer is logged and never reaches the pool's decision logic.
"""

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Dict, List, Optional

from .errors import ConfigurationError
from .slot import ConnectionSlot
from .utils.logging import get_logger

if TYPE_CHECKING:
    from .sweeper import SweepSummary
    from .validation import ValidationContext

logger = get_logger(__name__)


class PoolEvent(str, Enum):
    """Events published by the pool."""

    BORROW = "borrow"
    RETURN = "return"
    EVICT = "evict"
    ABANDON = "abandon"
    VALIDATION_FAILURE = "validation_failure"
    SWEEP = "sweep"


_HOOKS: Dict[PoolEvent, str] = {
    PoolEvent.BORROW: "on_borrow",
    PoolEvent.RETURN: "on_return",
    PoolEvent.EVICT: "on_evict",
    PoolEvent.ABANDON: "on_abandon",
    PoolEvent.VALIDATION_FAILURE: "on_validation_failure",
    PoolEvent.SWEEP: "on_sweep",
}


class PoolObserver:
    """Base class for pool observers.

    Subclasses set ``kind``, the key the registry deduplicates on, and
    override the hooks they care about.
    """

    kind: ClassVar[str] = "observer"

    def on_borrow(self, slot: ConnectionSlot) -> None:
        pass

    def on_return(self, slot: ConnectionSlot) -> None:
        pass

    def on_evict(self, slot: ConnectionSlot, reason: str) -> None:
        pass

    def on_abandon(self, slot: ConnectionSlot, elapsed: float) -> None:
        pass

    def on_validation_failure(self, slot: ConnectionSlot, context: "ValidationContext") -> None:
        pass

    def on_sweep(self, pool_name: str, summary: "SweepSummary") -> None:
        pass


class LogObserver(PoolObserver):
    """Observer that writes an audit log line for every pool event."""

    kind = "log"

    def __init__(self, level: int = logging.DEBUG):
        self.level = level

    def on_borrow(self, slot: ConnectionSlot) -> None:
        logger.log(self.level, f"Borrowed {slot!r}")

    def on_return(self, slot: ConnectionSlot) -> None:
        logger.log(self.level, f"Returned {slot!r}")

    def on_evict(self, slot: ConnectionSlot, reason: str) -> None:
        logger.log(self.level, f"Evicted {slot!r} ({reason})")

    def on_abandon(self, slot: ConnectionSlot, elapsed: float) -> None:
        logger.log(self.level, f"Reclaimed abandoned {slot!r} after {elapsed:.3f}s")

    def on_validation_failure(self, slot: ConnectionSlot, context: "ValidationContext") -> None:
        logger.log(self.level, f"Validation failed for {slot!r} on {context.value}")

    def on_sweep(self, pool_name: str, summary: "SweepSummary") -> None:
        logger.log(self.level, f"Sweep of pool {pool_name}: {summary}")


class ObserverRegistry:
    """Registry of observers keyed by their kind."""

    def __init__(self):
        self._observers: Dict[str, PoolObserver] = {}

    def register(self, observer: PoolObserver) -> bool:
        """Install an observer.

        Args:
            observer: The observer to install

        Returns:
            False if an observer of the same kind is already installed
        """
        if observer.kind in self._observers:
            logger.debug(f"Observer of kind '{observer.kind}' is already registered")
            return False

        self._observers[observer.kind] = observer
        logger.info(f"Registered pool observer: {observer.kind}")
        return True

    def unregister(self, kind: str) -> Optional[PoolObserver]:
        """Remove the observer of the given kind, if any."""
        return self._observers.pop(kind, None)

    def get(self, kind: str) -> Optional[PoolObserver]:
        return self._observers.get(kind)

    def kinds(self) -> List[str]:
        return list(self._observers)

    def notify(self, event: PoolEvent, *args: Any) -> None:
        """Call the hook for an event on every observer."""
        hook_name = _HOOKS[event]
        for observer in list(self._observers.values()):
            try:
                getattr(observer, hook_name)(*args)
            except Exception as e:
                logger.error(f"Observer '{observer.kind}' failed on {event.value}: {e}", exc_info=True)

    def __len__(self) -> int:
        return len(self._observers)

    def __contains__(self, kind: str) -> bool:
        return kind in self._observers


def _create_stat_observer() -> PoolObserver:
    from .metrics import StatObserver
    return StatObserver()


# Built-in observers installable by name through PoolConfig.filters
BUILTIN_OBSERVERS: Dict[str, Callable[[], PoolObserver]] = {
    "log": LogObserver,
    "stat": _create_stat_observer,
}


def create_observer(name: str) -> PoolObserver:
    """Create a built-in observer by name.

    Raises:
        ConfigurationError: If no built-in observer has that name
    """
    factory = BUILTIN_OBSERVERS.get(name)
    if factory is None:
        raise ConfigurationError(
            f"Unknown observer '{name}', expected one of: {', '.join(sorted(BUILTIN_OBSERVERS))}"
        )
    return factory()

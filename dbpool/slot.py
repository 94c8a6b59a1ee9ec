"""
Pooled connection slots.

A slot wraps one physical connection handle together with the bookkeeping
the pool needs to lend it out, validate it and evict it.
"""

import itertools
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from .errors import InvalidSlotError
from .utils.logging import get_logger

logger = get_logger(__name__)

_slot_ids = itertools.count(1)


class SlotState(str, Enum):
    """Lifecycle states of a slot."""

    IDLE = "idle"
    BORROWED = "borrowed"
    VALIDATING = "validating"
    DISCARDED = "discarded"


_TRANSITIONS: Dict[SlotState, FrozenSet[SlotState]] = {
    SlotState.IDLE: frozenset({SlotState.BORROWED, SlotState.VALIDATING, SlotState.DISCARDED}),
    SlotState.BORROWED: frozenset({SlotState.IDLE, SlotState.VALIDATING, SlotState.DISCARDED}),
    SlotState.VALIDATING: frozenset({SlotState.IDLE, SlotState.BORROWED, SlotState.DISCARDED}),
    SlotState.DISCARDED: frozenset(),
}


def _close_statement(statement: Any) -> None:
    close = getattr(statement, "close", None)
    if callable(close):
        close()


class StatementCache:
    """Per-connection LRU cache of prepared statements."""

    def __init__(self, max_size: int, on_evict: Optional[Callable[[Any], None]] = None):
        """Initialize the cache.

        Args:
            max_size: Maximum number of statements, 0 or less disables caching
            on_evict: Called with each statement dropped from the cache
        """
        self.max_size = max_size
        self.on_evict = on_evict or _close_statement
        self._entries: "OrderedDict[Any, Any]" = OrderedDict()

        # Statistics
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    @property
    def enabled(self) -> bool:
        return self.max_size > 0

    def get(self, key: Any) -> Optional[Any]:
        """Get a cached statement, marking it most recently used."""
        statement = self._entries.get(key)
        if statement is None:
            self.misses += 1
            return None

        self._entries.move_to_end(key)
        self.hits += 1
        return statement

    def put(self, key: Any, statement: Any) -> None:
        """Cache a statement, evicting the least recently used one if full.

        When caching is disabled the statement is dropped immediately.
        """
        if not self.enabled:
            self._evict(statement)
            return

        previous = self._entries.pop(key, None)
        if previous is not None and previous is not statement:
            self._evict(previous)

        self._entries[key] = statement

        while len(self._entries) > self.max_size:
            _, oldest = self._entries.popitem(last=False)
            self._evict(oldest)

    def clear(self) -> None:
        """Drop every cached statement."""
        entries = list(self._entries.values())
        self._entries.clear()
        for statement in entries:
            self._evict(statement)

    def _evict(self, statement: Any) -> None:
        self.evictions += 1
        try:
            self.on_evict(statement)
        except Exception as e:
            logger.warning(f"Error closing cached statement: {e}")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Any) -> bool:
        return key in self._entries


@dataclass(eq=False)
class ConnectionSlot:
    """A physical connection with its pool bookkeeping."""

    handle: Any
    pool_name: str
    statements: StatementCache
    id: int = field(default_factory=lambda: next(_slot_ids))
    state: SlotState = SlotState.IDLE
    created_at: float = field(default_factory=time.monotonic)
    last_borrowed_at: Optional[float] = None
    last_returned_at: float = field(default_factory=time.monotonic)
    borrower_tag: Optional[str] = None
    borrow_stack: Optional[List[str]] = None
    failed_validation_count: int = 0
    borrow_count: int = 0

    def _transition(self, target: SlotState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidSlotError(
                f"Illegal slot transition {self.state.value} -> {target.value}",
                pool=self.pool_name,
                slot_id=self.id
            )
        self.state = target

    def mark_borrowed(self, now: float, tag: Optional[str] = None, stack: Optional[List[str]] = None) -> None:
        """Hand the slot to a borrower."""
        self._transition(SlotState.BORROWED)
        self.last_borrowed_at = now
        self.borrower_tag = tag
        self.borrow_stack = stack
        self.borrow_count += 1

    def mark_validating(self) -> None:
        self._transition(SlotState.VALIDATING)

    def mark_validated(self) -> None:
        """Return a slot that passed validation on borrow to its borrower."""
        self._transition(SlotState.BORROWED)

    def mark_idle(self, now: Optional[float] = None) -> None:
        """Put the slot back in the idle set.

        Args:
            now: Return time, or None to keep the previous one (idle validation)
        """
        self._transition(SlotState.IDLE)
        if now is not None:
            self.last_returned_at = now
            self.borrower_tag = None
            self.borrow_stack = None

    def mark_discarded(self) -> None:
        self._transition(SlotState.DISCARDED)
        self.statements.clear()

    @property
    def discarded(self) -> bool:
        return self.state is SlotState.DISCARDED

    def idle_for(self, now: float) -> float:
        return now - self.last_returned_at

    def borrowed_for(self, now: float) -> float:
        if self.last_borrowed_at is None:
            return 0.0
        return now - self.last_borrowed_at

    def __repr__(self) -> str:
        return f"ConnectionSlot(id={self.id}, pool={self.pool_name}, state={self.state.value}, tag={self.borrower_tag})"

"""
Mutable state of a single pool instance.

Every attribute here is read and written only under the owning pool's lock.
"""

import asyncio
from collections import deque
from typing import Deque, Dict, List, Optional

from .slot import ConnectionSlot, SlotState


class Waiter:
    """A borrower blocked on capacity."""

    __slots__ = ("future", "tag", "stack")

    def __init__(self, future: asyncio.Future, tag: Optional[str] = None, stack: Optional[List[str]] = None):
        self.future = future
        self.tag = tag
        self.stack = stack


class PoolState:
    """Idle set, borrowed set, counters and waiter queue of one pool."""

    def __init__(self, max_active: int):
        self.max_active = max_active

        # Oldest return on the left, most recent on the right
        self.idle: Deque[ConnectionSlot] = deque()
        self.borrowed: Dict[int, ConnectionSlot] = {}
        self.validating: Dict[int, ConnectionSlot] = {}

        self.total_open = 0
        self.pending_opens = 0

        # FIFO queue of borrowers blocked on capacity
        self.waiters: Deque[Waiter] = deque()

        # Statistics
        self.created_connections = 0
        self.closed_connections = 0
        self.borrows = 0
        self.returns = 0
        self.timeouts = 0
        self.connect_errors = 0
        self.validation_failures = 0
        self.evictions = 0
        self.abandoned = 0
        self.max_borrowed = 0

    def has_capacity(self) -> bool:
        """Check whether another physical connection may be opened."""
        return self.total_open + self.pending_opens < self.max_active

    def pop_idle(self) -> ConnectionSlot:
        """Take the most recently returned idle slot."""
        return self.idle.pop()

    def push_idle(self, slot: ConnectionSlot) -> None:
        """Put a just-returned slot at the head of the idle set."""
        self.idle.append(slot)

    def insert_idle(self, slot: ConnectionSlot) -> None:
        """Put a slot back in the idle set at the position of its return time."""
        index = len(self.idle)
        while index > 0 and self.idle[index - 1].last_returned_at > slot.last_returned_at:
            index -= 1
        self.idle.insert(index, slot)

    def remove_idle(self, slot: ConnectionSlot) -> bool:
        try:
            self.idle.remove(slot)
        except ValueError:
            return False
        return True

    def add_borrowed(self, slot: ConnectionSlot) -> None:
        self.borrowed[slot.id] = slot
        self.max_borrowed = max(self.max_borrowed, len(self.borrowed))

    def live_waiters(self) -> int:
        return sum(1 for waiter in self.waiters if not waiter.future.done())

    def all_slots(self) -> List[ConnectionSlot]:
        return list(self.idle) + list(self.borrowed.values()) + list(self.validating.values())

    def check_invariants(self) -> None:
        """Assert the structural invariants of the pool state.

        Raises:
            AssertionError: If an invariant does not hold
        """
        idle_ids = {slot.id for slot in self.idle}
        assert len(idle_ids) == len(self.idle), "slot appears twice in the idle set"
        assert not idle_ids & self.borrowed.keys(), "slot is both idle and borrowed"
        assert not idle_ids & self.validating.keys(), "slot is both idle and validating"
        assert not self.borrowed.keys() & self.validating.keys(), "slot is both borrowed and validating"
        assert len(self.idle) + len(self.borrowed) + len(self.validating) == self.total_open, "open count mismatch"
        assert self.total_open + self.pending_opens <= self.max_active, "max_active exceeded"
        assert all(slot.state is SlotState.IDLE for slot in self.idle), "non-idle slot in the idle set"

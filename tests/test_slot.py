"""
Tests for connection slots and the statement cache.
"""

import pytest
from unittest.mock import MagicMock

from dbpool.errors import InvalidSlotError
from dbpool.slot import ConnectionSlot, SlotState, StatementCache


def make_slot(max_statements=3):
    return ConnectionSlot(handle=object(), pool_name="test", statements=StatementCache(max_statements))


def test_slot_ids_are_unique():
    """Test that every slot gets its own id."""
    first = make_slot()
    second = make_slot()

    assert first.id != second.id
    assert first.state is SlotState.IDLE


def test_borrow_and_return_cycle():
    """Test the borrow and return transitions."""
    slot = make_slot()

    slot.mark_borrowed(10.0, tag="report", stack=["frame"])
    assert slot.state is SlotState.BORROWED
    assert slot.borrower_tag == "report"
    assert slot.borrow_stack == ["frame"]
    assert slot.borrow_count == 1
    assert slot.borrowed_for(12.5) == 2.5

    slot.mark_idle(15.0)
    assert slot.state is SlotState.IDLE
    assert slot.last_returned_at == 15.0
    assert slot.borrower_tag is None
    assert slot.borrow_stack is None
    assert slot.idle_for(20.0) == 5.0


def test_validation_transitions():
    """Test the transitions through the validating state."""
    slot = make_slot()

    # Validation on borrow
    slot.mark_borrowed(1.0)
    slot.mark_validating()
    assert slot.state is SlotState.VALIDATING
    slot.mark_validated()
    assert slot.state is SlotState.BORROWED

    # Validation on return
    slot.mark_validating()
    slot.mark_idle(2.0)
    assert slot.state is SlotState.IDLE

    # Idle validation keeps the return time
    slot.mark_validating()
    slot.mark_idle()
    assert slot.last_returned_at == 2.0


def test_double_borrow_is_illegal():
    """Test that a borrowed slot cannot be borrowed again."""
    slot = make_slot()
    slot.mark_borrowed(1.0)

    with pytest.raises(InvalidSlotError):
        slot.mark_borrowed(2.0)


def test_discarded_is_terminal():
    """Test that no transition leaves the discarded state."""
    slot = make_slot()
    slot.mark_discarded()

    assert slot.discarded
    with pytest.raises(InvalidSlotError):
        slot.mark_idle(1.0)
    with pytest.raises(InvalidSlotError):
        slot.mark_borrowed(1.0)
    with pytest.raises(InvalidSlotError):
        slot.mark_discarded()


def test_discard_clears_statements():
    """Test that discarding a slot closes its cached statements."""
    slot = make_slot()
    statement = MagicMock()
    slot.statements.put("select 1", statement)

    slot.mark_discarded()

    assert len(slot.statements) == 0
    statement.close.assert_called_once()


def test_statement_cache_lru():
    """Test that the least recently used statement is evicted."""
    cache = StatementCache(2)
    first, second, third = MagicMock(), MagicMock(), MagicMock()

    cache.put("a", first)
    cache.put("b", second)

    # Touch "a" so that "b" becomes the least recently used
    assert cache.get("a") is first
    cache.put("c", third)

    assert "a" in cache
    assert "b" not in cache
    assert "c" in cache
    second.close.assert_called_once()
    first.close.assert_not_called()
    assert cache.evictions == 1


def test_statement_cache_hits_and_misses():
    """Test the cache statistics."""
    cache = StatementCache(2)
    cache.put("a", MagicMock())

    cache.get("a")
    cache.get("missing")

    assert cache.hits == 1
    assert cache.misses == 1


def test_statement_cache_replace():
    """Test that replacing a key closes the previous statement."""
    cache = StatementCache(2)
    old, new = MagicMock(), MagicMock()

    cache.put("a", old)
    cache.put("a", new)

    assert cache.get("a") is new
    assert len(cache) == 1
    old.close.assert_called_once()


def test_statement_cache_disabled():
    """Test that a cache with size 0 keeps nothing."""
    cache = StatementCache(0)
    statement = MagicMock()

    cache.put("a", statement)

    assert not cache.enabled
    assert len(cache) == 0
    statement.close.assert_called_once()


def test_statement_cache_close_errors_are_contained():
    """Test that an error closing a statement does not escape the cache."""
    on_evict = MagicMock(side_effect=RuntimeError("boom"))
    cache = StatementCache(1, on_evict=on_evict)

    cache.put("a", "stmt-a")
    cache.put("b", "stmt-b")

    on_evict.assert_called_once_with("stmt-a")
    assert "b" in cache

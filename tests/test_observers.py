"""
Tests for pool observers and metrics.
"""

import time
import pytest
from prometheus_client import CollectorRegistry

from dbpool.errors import ConfigurationError
from dbpool.metrics import StatObserver
from dbpool.observers import LogObserver, ObserverRegistry, PoolEvent, create_observer
from dbpool.slot import ConnectionSlot, StatementCache
from dbpool.sweeper import SweepSummary
from dbpool.validation import ValidationContext


@pytest.fixture
def slot():
    """Create a slot for a pool named 'metrics-test'."""
    return ConnectionSlot(handle=object(), pool_name="metrics-test", statements=StatementCache(0))


def test_register_deduplicates_by_kind():
    """Test that a second observer of the same kind is not installed."""
    registry = ObserverRegistry()
    first = LogObserver()

    assert registry.register(first)
    assert not registry.register(LogObserver())

    assert len(registry) == 1
    assert registry.get("log") is first
    assert "log" in registry


def test_unregister():
    """Test removing an observer."""
    registry = ObserverRegistry()
    observer = LogObserver()
    registry.register(observer)

    assert registry.unregister("log") is observer
    assert registry.unregister("log") is None
    assert len(registry) == 0


def test_notify_isolates_failures(recording_observer, slot):
    """Test that one failing observer does not prevent the others from running."""
    class BrokenObserver(LogObserver):
        kind = "broken"

        def on_borrow(self, slot):
            raise RuntimeError("observer bug")

    registry = ObserverRegistry()
    registry.register(BrokenObserver())
    registry.register(recording_observer)

    registry.notify(PoolEvent.BORROW, slot)

    assert recording_observer.events == [("borrow", slot.id)]


def test_create_observer():
    """Test creating built-in observers by name."""
    assert isinstance(create_observer("log"), LogObserver)
    assert isinstance(create_observer("stat"), StatObserver)

    with pytest.raises(ConfigurationError):
        create_observer("wall")


def test_stat_observer_counts_events(slot):
    """Test that the stat observer records events as metrics."""
    registry = CollectorRegistry()
    observer = StatObserver(registry=registry)
    labels = {"pool": "metrics-test"}

    slot.mark_borrowed(time.monotonic())
    observer.on_borrow(slot)
    assert registry.get_sample_value("dbpool_borrows_total", labels) == 1.0
    assert registry.get_sample_value("dbpool_borrowed_connections", labels) == 1.0

    observer.on_return(slot)
    assert registry.get_sample_value("dbpool_returns_total", labels) == 1.0
    assert registry.get_sample_value("dbpool_borrowed_connections", labels) == 0.0
    assert registry.get_sample_value("dbpool_borrow_duration_seconds_count", labels) == 1.0

    observer.on_evict(slot, "idle")
    assert registry.get_sample_value(
        "dbpool_evictions_total", {"pool": "metrics-test", "reason": "idle"}
    ) == 1.0

    observer.on_validation_failure(slot, ValidationContext.IDLE)
    assert registry.get_sample_value(
        "dbpool_validation_failures_total", {"pool": "metrics-test", "context": "idle"}
    ) == 1.0

    observer.on_sweep("metrics-test", SweepSummary())
    assert registry.get_sample_value("dbpool_sweeps_total", labels) == 1.0


def test_stat_observer_abandon(slot):
    """Test that reclaiming an abandoned connection updates the borrowed gauge."""
    registry = CollectorRegistry()
    observer = StatObserver(registry=registry)
    labels = {"pool": "metrics-test"}

    observer.on_borrow(slot)
    observer.on_abandon(slot, 12.0)

    assert registry.get_sample_value("dbpool_abandoned_total", labels) == 1.0
    assert registry.get_sample_value("dbpool_borrowed_connections", labels) == 0.0


@pytest.mark.asyncio
async def test_stat_observer_in_pool(factory, make_config):
    """Test the stat observer attached to a running pool."""
    from dbpool.pool import ConnectionPool

    registry = CollectorRegistry()
    pool = ConnectionPool(make_config(name="metered"), factory, observers=[StatObserver(registry=registry)])
    await pool.start()

    async with pool.connection():
        pass
    async with pool.connection():
        pass

    assert registry.get_sample_value("dbpool_borrows_total", {"pool": "metered"}) == 2.0
    assert registry.get_sample_value("dbpool_returns_total", {"pool": "metered"}) == 2.0

    await pool.shutdown()
    assert registry.get_sample_value("dbpool_evictions_total", {"pool": "metered", "reason": "shutdown"}) == 1.0


@pytest.mark.asyncio
async def test_stat_observer_force_closed_connections(factory, make_config):
    """Test that force-closed connections no longer count as borrowed."""
    from dbpool.pool import ConnectionPool

    registry = CollectorRegistry()
    pool = ConnectionPool(make_config(name="forced"), factory, observers=[StatObserver(registry=registry)])
    await pool.start()

    await pool.borrow()
    assert registry.get_sample_value("dbpool_borrowed_connections", {"pool": "forced"}) == 1.0

    await pool.shutdown(grace_period=0)

    assert registry.get_sample_value("dbpool_borrowed_connections", {"pool": "forced"}) == 0.0
    assert registry.get_sample_value("dbpool_evictions_total", {"pool": "forced", "reason": "forced"}) == 1.0


def test_stat_observer_shutdown_eviction_keeps_gauge(slot):
    """Test that closing an idle connection does not touch the borrowed gauge."""
    observer = StatObserver(registry=CollectorRegistry())

    observer.on_borrow(slot)
    observer.on_return(slot)
    observer.on_evict(slot, "shutdown")

    assert observer.metrics.registry.get_sample_value(
        "dbpool_borrowed_connections", {"pool": "metrics-test"}
    ) == 0.0

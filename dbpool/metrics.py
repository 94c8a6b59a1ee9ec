"""
Prometheus metrics for connection pools.

The ``stat`` observer records pool events into these metrics. Metrics live
in a dedicated registry so that several pools, or tests, do not collide
with the application's default registry.
"""

import time
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

from .observers import PoolObserver
from .slot import ConnectionSlot


# Create a registry for metrics
registry = CollectorRegistry()


class PoolMetrics:
    """Set of pool metrics bound to one registry."""

    def __init__(self, registry: CollectorRegistry):
        self.registry = registry

        self.borrows = Counter(
            'dbpool_borrows_total',
            'Connections handed out to borrowers',
            ['pool'],
            registry=registry
        )

        self.returns = Counter(
            'dbpool_returns_total',
            'Connections returned by borrowers',
            ['pool'],
            registry=registry
        )

        self.evictions = Counter(
            'dbpool_evictions_total',
            'Connections closed by the pool',
            ['pool', 'reason'],
            registry=registry
        )

        self.abandoned = Counter(
            'dbpool_abandoned_total',
            'Borrowed connections reclaimed as abandoned',
            ['pool'],
            registry=registry
        )

        self.validation_failures = Counter(
            'dbpool_validation_failures_total',
            'Connections that failed validation',
            ['pool', 'context'],
            registry=registry
        )

        self.sweeps = Counter(
            'dbpool_sweeps_total',
            'Eviction sweeps run',
            ['pool'],
            registry=registry
        )

        self.borrowed = Gauge(
            'dbpool_borrowed_connections',
            'Connections currently borrowed',
            ['pool'],
            registry=registry
        )

        self.borrow_duration = Histogram(
            'dbpool_borrow_duration_seconds',
            'Time connections were held by borrowers',
            ['pool'],
            buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0, 300.0),
            registry=registry
        )


DEFAULT_METRICS = PoolMetrics(registry)


class StatObserver(PoolObserver):
    """Observer that records pool events as Prometheus metrics."""

    kind = "stat"

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize the observer.

        Args:
            registry: Registry to record into, or None for the module registry
        """
        self.metrics = DEFAULT_METRICS if registry is None else PoolMetrics(registry)

    def on_borrow(self, slot: ConnectionSlot) -> None:
        self.metrics.borrows.labels(pool=slot.pool_name).inc()
        self.metrics.borrowed.labels(pool=slot.pool_name).inc()

    def on_return(self, slot: ConnectionSlot) -> None:
        self.metrics.returns.labels(pool=slot.pool_name).inc()
        self.metrics.borrowed.labels(pool=slot.pool_name).dec()
        if slot.last_borrowed_at is not None:
            self.metrics.borrow_duration.labels(pool=slot.pool_name).observe(
                time.monotonic() - slot.last_borrowed_at
            )

    def on_evict(self, slot: ConnectionSlot, reason: str) -> None:
        self.metrics.evictions.labels(pool=slot.pool_name, reason=reason).inc()
        if reason == "forced":
            # Force-closed by shutdown while still borrowed, never returned
            self.metrics.borrowed.labels(pool=slot.pool_name).dec()

    def on_abandon(self, slot: ConnectionSlot, elapsed: float) -> None:
        self.metrics.abandoned.labels(pool=slot.pool_name).inc()
        self.metrics.borrowed.labels(pool=slot.pool_name).dec()

    def on_validation_failure(self, slot: ConnectionSlot, context) -> None:
        self.metrics.validation_failures.labels(pool=slot.pool_name, context=context.value).inc()

    def on_sweep(self, pool_name: str, summary) -> None:
        self.metrics.sweeps.labels(pool=pool_name).inc()

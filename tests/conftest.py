"""
Pytest configuration and fixtures for the dbpool test suite.

This module provides a scriptable in-memory connection factory and
configuration helpers shared by the test modules.
"""

import asyncio
import itertools
from typing import Any, Dict, List

import pytest

from dbpool.config import Credentials, PoolConfig
from dbpool.factory import ConnectionFactory
from dbpool.observers import PoolObserver


class FakeConnection:
    """Stand-in for a physical database connection."""

    _ids = itertools.count(1)

    def __init__(self, endpoint: str, user: str):
        self.id = next(self._ids)
        self.endpoint = endpoint
        self.user = user
        self.alive = True
        self.closed = False

    def __repr__(self) -> str:
        return f"FakeConnection(id={self.id}, alive={self.alive})"


class FakeFactory(ConnectionFactory):
    """Connection factory whose failures can be scripted by tests."""

    def __init__(self, fail_opens: int = 0, open_delay: float = 0.0, probe_delay: float = 0.0):
        self.fail_opens = fail_opens
        self.open_delay = open_delay
        self.probe_delay = probe_delay
        self.open_calls = 0
        self.probe_calls = 0
        self.close_calls = 0
        self.opened: List[FakeConnection] = []
        self.closed: List[FakeConnection] = []

    async def open(self, endpoint: str, credentials: Credentials) -> Any:
        self.open_calls += 1
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.fail_opens:
            self.fail_opens -= 1
            raise OSError("connection refused")

        connection = FakeConnection(endpoint, credentials.user)
        self.opened.append(connection)
        return connection

    async def close(self, handle: Any) -> None:
        self.close_calls += 1
        if not handle.closed:
            handle.closed = True
            self.closed.append(handle)

    async def probe(self, handle: Any, validation_query: str) -> bool:
        self.probe_calls += 1
        if self.probe_delay:
            await asyncio.sleep(self.probe_delay)
        return handle.alive and not handle.closed


class RecordingObserver(PoolObserver):
    """Observer that records every event it receives."""

    kind = "recording"

    def __init__(self):
        self.events: List[tuple] = []

    def on_borrow(self, slot):
        self.events.append(("borrow", slot.id))

    def on_return(self, slot):
        self.events.append(("return", slot.id))

    def on_evict(self, slot, reason):
        self.events.append(("evict", slot.id, reason))

    def on_abandon(self, slot, elapsed):
        self.events.append(("abandon", slot.id))

    def on_validation_failure(self, slot, context):
        self.events.append(("validation_failure", slot.id, context.value))

    def on_sweep(self, pool_name, summary):
        self.events.append(("sweep", pool_name))

    def names(self) -> List[str]:
        return [event[0] for event in self.events]


# Small pool that never sweeps or waits on its own
BASE_CONFIG: Dict[str, Any] = {
    "name": "test",
    "url": "fake://localhost/test",
    "user": "app",
    "password": "secret",
    "initial_size": 0,
    "min_idle": 0,
    "max_active": 4,
    "eviction_interval_millis": 0,
    "reconnect_backoff_millis": 0,
    "validate_while_idle": False,
    "shutdown_grace_millis": 0,
}


@pytest.fixture
def factory():
    """Create a fake connection factory."""
    return FakeFactory()


@pytest.fixture
def make_config():
    """Create a config builder that applies overrides to the test defaults."""
    def _make_config(**overrides) -> PoolConfig:
        values = dict(BASE_CONFIG)
        values.update(overrides)
        return PoolConfig(**values)

    return _make_config


@pytest.fixture
def recording_observer():
    """Create an observer that records pool events."""
    return RecordingObserver()

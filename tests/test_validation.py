"""
Tests for the validation policy.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock

from dbpool.slot import ConnectionSlot, StatementCache
from dbpool.validation import ValidationContext, ValidationPolicy, ValidationResult


@pytest.fixture
def slot():
    """Create an idle slot around a dummy handle."""
    return ConnectionSlot(handle="conn", pool_name="test", statements=StatementCache(0))


def test_should_validate(make_config):
    """Test that the policy follows the configured flags."""
    config = make_config(validate_on_borrow=True, validate_on_return=False, validate_while_idle=True)
    policy = ValidationPolicy.from_config(config, MagicMock())

    assert policy.should_validate(ValidationContext.BORROW)
    assert not policy.should_validate(ValidationContext.RETURN)
    assert policy.should_validate(ValidationContext.IDLE)
    assert policy.should_validate("idle")


@pytest.mark.asyncio
async def test_validate_healthy(slot):
    """Test a probe that succeeds."""
    factory = MagicMock()
    factory.probe = AsyncMock(return_value=True)
    policy = ValidationPolicy(factory, validation_query="select 42")

    assert await policy.validate(slot) is ValidationResult.HEALTHY
    factory.probe.assert_awaited_once_with("conn", "select 42")


@pytest.mark.asyncio
async def test_validate_unhealthy(slot):
    """Test a probe that reports a broken connection."""
    factory = MagicMock()
    factory.probe = AsyncMock(return_value=False)
    policy = ValidationPolicy(factory)

    assert await policy.validate(slot) is ValidationResult.UNHEALTHY


@pytest.mark.asyncio
async def test_validate_probe_error(slot):
    """Test that a probe raising an error counts as unhealthy."""
    factory = MagicMock()
    factory.probe = AsyncMock(side_effect=OSError("connection reset"))
    policy = ValidationPolicy(factory)

    assert await policy.validate(slot) is ValidationResult.UNHEALTHY


@pytest.mark.asyncio
async def test_validate_timeout(slot):
    """Test that a probe exceeding the timeout counts as unhealthy."""
    async def slow_probe(handle, query):
        await asyncio.sleep(1)
        return True

    factory = MagicMock()
    factory.probe = slow_probe
    policy = ValidationPolicy(factory, timeout=0.01)

    assert await policy.validate(slot) is ValidationResult.UNHEALTHY


@pytest.mark.asyncio
async def test_validate_does_not_change_state(slot):
    """Test that validation leaves the slot state to the caller."""
    factory = MagicMock()
    factory.probe = AsyncMock(return_value=False)
    policy = ValidationPolicy(factory)

    await policy.validate(slot)

    assert slot.state.value == "idle"

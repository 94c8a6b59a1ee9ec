"""
Connection validation policy.

Decides when a slot should be probed and runs the probe. Validation never
changes slot state; the caller applies the outcome.
"""

import asyncio
from enum import Enum

from .config import PoolConfig
from .factory import ConnectionFactory
from .slot import ConnectionSlot
from .utils.logging import get_logger

logger = get_logger(__name__)


class ValidationContext(str, Enum):
    """Points in the slot lifecycle where validation can run."""

    BORROW = "borrow"
    RETURN = "return"
    IDLE = "idle"


class ValidationResult(str, Enum):
    """Outcome of a probe."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class ValidationPolicy:
    """Validation flags plus the probe that applies them."""

    def __init__(
        self,
        factory: ConnectionFactory,
        validation_query: str = "select 1",
        timeout: float = 5.0,
        on_borrow: bool = False,
        on_return: bool = False,
        while_idle: bool = True
    ):
        """Initialize the validation policy.

        Args:
            factory: The factory whose probe checks connections
            validation_query: The query passed to the probe
            timeout: Maximum time in seconds a probe may take
            on_borrow: Validate slots before handing them out
            on_return: Validate slots when they are returned
            while_idle: Validate idle slots during the sweep
        """
        self.factory = factory
        self.validation_query = validation_query
        self.timeout = timeout
        self._flags = {
            ValidationContext.BORROW: on_borrow,
            ValidationContext.RETURN: on_return,
            ValidationContext.IDLE: while_idle,
        }

    @classmethod
    def from_config(cls, config: PoolConfig, factory: ConnectionFactory) -> "ValidationPolicy":
        return cls(
            factory,
            validation_query=config.validation_query,
            timeout=config.validation_timeout,
            on_borrow=config.validate_on_borrow,
            on_return=config.validate_on_return,
            while_idle=config.validate_while_idle
        )

    def should_validate(self, context: ValidationContext) -> bool:
        return self._flags[ValidationContext(context)]

    async def validate(self, slot: ConnectionSlot) -> ValidationResult:
        """Probe the physical connection of a slot.

        A probe that returns False, raises, or exceeds the timeout counts
        as unhealthy.
        """
        try:
            healthy = await asyncio.wait_for(
                self.factory.probe(slot.handle, self.validation_query),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Validation of slot {slot.id} timed out after {self.timeout} seconds")
            return ValidationResult.UNHEALTHY
        except Exception as e:
            logger.warning(f"Validation of slot {slot.id} failed: {e}")
            return ValidationResult.UNHEALTHY

        return ValidationResult.HEALTHY if healthy else ValidationResult.UNHEALTHY

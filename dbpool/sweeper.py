"""
Background eviction sweeper.

Periodically evicts connections idle past their limit, validates idle
connections, reclaims abandoned borrows and tops the idle set back up.
"""

import asyncio
import time
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, List, Optional, Tuple

from .observers import PoolEvent
from .slot import ConnectionSlot, SlotState
from .utils.logging import LoggingContext, get_logger
from .validation import ValidationContext, ValidationResult

if TYPE_CHECKING:
    from .pool import ConnectionPool

logger = get_logger(__name__)


@dataclass
class SweepSummary:
    """Outcome of one sweep."""

    evicted: int = 0
    validation_failures: int = 0
    reclaimed: int = 0
    topped_up: int = 0
    errors: int = 0


class EvictionSweeper:
    """Runs the maintenance sweep of one pool on a fixed interval."""

    def __init__(self, pool: "ConnectionPool", interval: float):
        """Initialize the sweeper.

        Args:
            pool: The pool to maintain
            interval: Seconds between sweeps
        """
        self.pool = pool
        self.interval = interval
        self.runs = 0
        self.last_summary: Optional[SweepSummary] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the sweep loop in the background."""
        if self.running:
            return
        if self.interval <= 0:
            raise ValueError(f"Sweep interval must be positive, got {self.interval}")

        self._task = asyncio.get_running_loop().create_task(self._sweep_loop())
        logger.info(f"Started eviction sweeper for pool {self.pool.name} every {self.interval}s")

    async def stop(self) -> None:
        """Stop the sweep loop and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self) -> None:
        """Sweep loop for the pool."""
        while True:
            try:
                await asyncio.sleep(self.interval)

                await self.run_once()
            except asyncio.CancelledError:
                logger.info(f"Eviction sweeper for pool {self.pool.name} cancelled")
                break
            except Exception as e:
                logger.error(f"Error in eviction sweeper for pool {self.pool.name}: {e}", exc_info=True)

    async def run_once(self) -> SweepSummary:
        """Run one sweep.

        Each step is isolated: an error in one is counted in the summary
        and the remaining steps still run.
        """
        pool = self.pool
        config = pool.config
        summary = SweepSummary()

        with LoggingContext(pool=pool.name):
            if pool.closed:
                return summary

            steps = [("eviction", self._evict_idle)]
            if pool.policy.should_validate(ValidationContext.IDLE):
                steps.append(("idle validation", self._validate_idle))
            if config.remove_abandoned:
                steps.append(("abandoned reclamation", self._reclaim_abandoned))
            steps.append(("top-up", self._top_up))

            for name, step in steps:
                try:
                    await step(summary)
                except Exception as e:
                    summary.errors += 1
                    logger.error(f"Sweep step '{name}' failed for pool {pool.name}: {e}", exc_info=True)

            self.runs += 1
            self.last_summary = summary
            logger.debug(f"Sweep of pool {pool.name} finished", extra={"summary": asdict(summary)})
            pool.observers.notify(PoolEvent.SWEEP, pool.name, summary)

        return summary

    async def _evict_idle(self, summary: SweepSummary) -> None:
        """Close the oldest idle connections past ``min_evictable_idle``, keeping ``min_idle``."""
        pool = self.pool
        evicted: List[ConnectionSlot] = []

        async with pool._lock:
            state = pool._state
            now = time.monotonic()
            allowance = len(state.idle) - pool.config.min_idle
            for slot in list(state.idle):
                if len(evicted) >= allowance:
                    break
                if slot.idle_for(now) <= pool.config.min_evictable_idle:
                    # Idle set is ordered by return time
                    break
                evicted.append(slot)

            for slot in evicted:
                pool._discard_locked(slot)
            state.evictions += len(evicted)

        for slot in evicted:
            await pool._close_slot(slot, "idle")
        summary.evicted += len(evicted)

    async def _validate_idle(self, summary: SweepSummary) -> None:
        """Probe idle connections one at a time, discarding the unhealthy ones."""
        pool = self.pool

        for slot in list(pool._state.idle):
            try:
                healthy = await self._validate_one(slot)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                summary.errors += 1
                logger.error(f"Error validating idle connection {slot.id} of pool {pool.name}: {e}")
                continue

            if healthy is False:
                summary.validation_failures += 1

    async def _validate_one(self, slot: ConnectionSlot) -> Optional[bool]:
        """Validate one idle slot.

        Returns:
            None if the slot left the idle set before it could be probed
        """
        pool = self.pool

        async with pool._lock:
            state = pool._state
            if pool.closed or slot.discarded or not state.remove_idle(slot):
                return None
            slot.mark_validating()
            state.validating[slot.id] = slot

        try:
            result = await pool.policy.validate(slot)

            async with pool._lock:
                state = pool._state
                if state.validating.get(slot.id) is not slot:
                    # Discarded by shutdown
                    return None

                if result is ValidationResult.HEALTHY:
                    self._readmit_locked(slot)
                    return True

                slot.failed_validation_count += 1
                state.validation_failures += 1
                pool._discard_locked(slot)
        except BaseException:
            self._readmit_locked(slot)
            raise

        logger.info(f"Discarding idle connection {slot.id} of pool {pool.name} after failed validation")
        pool.observers.notify(PoolEvent.VALIDATION_FAILURE, slot, ValidationContext.IDLE)
        await pool._close_slot(slot, "validation")
        return False

    def _readmit_locked(self, slot: ConnectionSlot) -> None:
        state = self.pool._state
        if state.validating.pop(slot.id, None) is slot:
            slot.mark_idle()
            self.pool._checkin_locked(slot, ordered=True)

    async def _reclaim_abandoned(self, summary: SweepSummary) -> None:
        """Reclaim connections borrowed for longer than ``abandoned_timeout``."""
        pool = self.pool
        config = pool.config
        reclaimed: List[Tuple[ConnectionSlot, float]] = []

        async with pool._lock:
            state = pool._state
            now = time.monotonic()
            for slot in list(state.borrowed.values()):
                if slot.state is not SlotState.BORROWED:
                    continue
                elapsed = slot.borrowed_for(now)
                if elapsed > config.abandoned_timeout:
                    reclaimed.append((slot, elapsed))

            for slot, _ in reclaimed:
                pool._discard_locked(slot)
            state.abandoned += len(reclaimed)

        for slot, elapsed in reclaimed:
            if config.log_abandoned:
                stack = "".join(slot.borrow_stack or [])
                logger.warning(
                    f"Reclaimed connection {slot.id} of pool {pool.name} borrowed by "
                    f"{slot.borrower_tag!r} {elapsed:.3f}s ago\n{stack}",
                    extra={"slot_id": slot.id, "borrower_tag": slot.borrower_tag, "elapsed": elapsed}
                )
            pool.observers.notify(PoolEvent.ABANDON, slot, elapsed)
            await pool._close_slot(slot, "abandoned")

        summary.reclaimed += len(reclaimed)

    async def _top_up(self, summary: SweepSummary) -> None:
        summary.topped_up += await self.pool._top_up()

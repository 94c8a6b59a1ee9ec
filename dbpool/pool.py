"""
Connection pool for the dbpool package.

This module provides the pool that lends pre-established physical
connections to callers and reclaims them after use, under a strict bound
on the number of open connections.
"""

import asyncio
import time
import traceback
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Tuple

from .config import PoolConfig
from .errors import ConnectError, InvalidSlotError, PoolClosedError, PoolTimeoutError, ValidationFailure
from .factory import ConnectionFactory
from .observers import ObserverRegistry, PoolEvent, PoolObserver, create_observer
from .slot import ConnectionSlot, SlotState, StatementCache
from .state import PoolState, Waiter
from .sweeper import EvictionSweeper
from .utils.logging import LoggingContext, get_logger
from .validation import ValidationContext, ValidationPolicy, ValidationResult

logger = get_logger(__name__)

# Granted to a waiter when capacity for one new connection was reserved for it
_CAPACITY = object()


class ConnectionPool:
    """Pool of reusable database connections.

    All state lives in a PoolState guarded by one asyncio lock. No locked
    section awaits, so the helpers suffixed ``_locked`` are synchronous and
    may also run from cancellation handlers without interleaving with a
    locked section.
    """

    def __init__(
        self,
        config: PoolConfig,
        factory: ConnectionFactory,
        observers: Optional[List[PoolObserver]] = None
    ):
        """Initialize the connection pool.

        Args:
            config: The pool configuration
            factory: The factory that opens, closes and probes connections
            observers: Observers to install in addition to ``config.filters``

        Raises:
            ConfigurationError: If ``config.filters`` names an unknown observer
        """
        self.config = config
        self.factory = factory
        self.name = config.name
        self.policy = ValidationPolicy.from_config(config, factory)

        self.observers = ObserverRegistry()
        for observer in observers or []:
            self.observers.register(observer)
        for name in config.filters:
            self.observers.register(create_observer(name))

        self.sweeper = EvictionSweeper(self, config.eviction_interval)

        self._state = PoolState(config.max_active)
        self._lock = asyncio.Lock()
        self._started = False
        self._closed = False
        self._drained: Optional[asyncio.Event] = None
        self._last_connect_error_at: Optional[float] = None
        self._backfill_tasks: Set[asyncio.Task] = set()
        self._closing_tasks: Set[asyncio.Task] = set()

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Open the initial connections and start the eviction sweeper."""
        if self._closed:
            raise PoolClosedError("Pool is closed", pool=self.name)
        if self._started:
            return
        self._started = True

        opened = await self._open_idle(self.config.initial_size)
        if opened < self.config.initial_size:
            logger.warning(
                f"Pool {self.name} opened {opened} of {self.config.initial_size} initial connections"
            )

        if self.config.eviction_interval_millis > 0:
            self.sweeper.start()

        logger.info(f"Started connection pool {self.name} with {opened} initial connections")

    async def shutdown(self, grace_period: Optional[float] = None) -> None:
        """Shut the pool down.

        New borrows are refused and pending waiters fail with
        PoolClosedError. Borrowed connections returned within the grace
        period are closed as they come back; the rest are closed when it
        expires, together with every idle connection.

        Args:
            grace_period: Seconds to wait for borrowed connections, or None
                for ``config.shutdown_grace_millis``
        """
        async with self._lock:
            if self._closed:
                return
            self._closed = True

            waiters = list(self._state.waiters)
            self._state.waiters.clear()
            for waiter in waiters:
                if not waiter.future.done():
                    waiter.future.set_exception(
                        PoolClosedError("Pool was shut down while waiting for a connection", pool=self.name)
                    )

            self._drained = asyncio.Event()
            self._check_drained_locked()

        with LoggingContext(pool=self.name):
            logger.info(f"Shutting down connection pool {self.name}")

            await self.sweeper.stop()

            tasks = list(self._backfill_tasks)
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

            grace = self.config.shutdown_grace if grace_period is None else grace_period
            if grace > 0 and not self._drained.is_set():
                try:
                    await asyncio.wait_for(self._drained.wait(), timeout=grace)
                except asyncio.TimeoutError:
                    pass

            async with self._lock:
                remaining = self._state.all_slots()
                # Slots still held by callers, as opposed to returns being validated
                forced = [slot for slot in remaining if slot.state is SlotState.BORROWED]
                for slot in remaining:
                    self._discard_locked(slot)

            for slot in forced:
                logger.warning(
                    f"Force-closing connection {slot.id} still borrowed by {slot.borrower_tag!r} at shutdown",
                    extra={"slot_id": slot.id, "borrower_tag": slot.borrower_tag}
                )

            forced_ids = {slot.id for slot in forced}
            for slot in remaining:
                await self._close_slot(slot, "forced" if slot.id in forced_ids else "shutdown")

            closing = list(self._closing_tasks)
            if closing:
                await asyncio.gather(*closing, return_exceptions=True)

            logger.info(f"Connection pool {self.name} shut down, closed {len(remaining)} connections")

    async def __aenter__(self) -> "ConnectionPool":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    # -- borrow / release ---------------------------------------------------

    async def borrow(self, timeout: Optional[float] = None, tag: Optional[str] = None) -> ConnectionSlot:
        """Borrow a connection from the pool.

        Args:
            timeout: Seconds to wait for a connection, or None for
                ``config.max_wait_millis``
            tag: Diagnostic label of the borrower, reported if the
                connection is abandoned

        Returns:
            A slot in the BORROWED state

        Raises:
            PoolTimeoutError: If no connection became available in time
            ConnectError: If connections could not be opened or kept failing validation
            PoolClosedError: If the pool is shut down
        """
        if timeout is None:
            timeout = self.config.max_wait
        elif timeout < 0:
            raise ValueError(f"timeout must be non-negative, got {timeout}")

        deadline = None if timeout is None else time.monotonic() + timeout
        stack = traceback.format_stack()[:-1] if self.config.log_abandoned else None

        attempts = 0
        last_error: Optional[Exception] = None

        while True:
            try:
                slot, fresh = await self._acquire(deadline, tag, stack)
            except PoolTimeoutError:
                self._state.timeouts += 1
                if last_error is not None:
                    raise ConnectError(
                        "Could not obtain a usable connection before the timeout",
                        pool=self.name
                    ) from last_error
                raise
            except ConnectError as e:
                attempts += 1
                last_error = e
                if attempts >= self.config.borrow_retry_limit:
                    raise
                continue

            if fresh or not self.policy.should_validate(ValidationContext.BORROW):
                return self._hand_out(slot)

            if await self._validate_borrowed(slot):
                return self._hand_out(slot)

            attempts += 1
            last_error = ValidationFailure("Connection failed validation on borrow", pool=self.name, slot_id=slot.id)
            if attempts >= self.config.borrow_retry_limit:
                raise ConnectError(
                    f"No healthy connection after {attempts} attempts",
                    pool=self.name
                ) from last_error

    async def release(self, slot: ConnectionSlot) -> None:
        """Return a borrowed connection to the pool.

        Args:
            slot: The slot obtained from ``borrow``

        Raises:
            InvalidSlotError: If the slot is not currently borrowed from this pool
            PoolClosedError: If the slot was force-closed by shutdown
        """
        if not isinstance(slot, ConnectionSlot):
            raise InvalidSlotError(f"Not a pooled connection: {slot!r}", pool=self.name)

        validate = False
        closing = False

        async with self._lock:
            state = self._state
            if state.borrowed.get(slot.id) is not slot or slot.state is not SlotState.BORROWED:
                if self._closed and slot.discarded and slot.pool_name == self.name:
                    raise PoolClosedError("Connection was closed by shutdown", pool=self.name, slot_id=slot.id)
                raise InvalidSlotError("Slot is not borrowed from this pool", pool=self.name, slot_id=slot.id)

            state.returns += 1
            self.observers.notify(PoolEvent.RETURN, slot)

            if self._closed:
                self._discard_locked(slot)
                closing = True
            elif self.policy.should_validate(ValidationContext.RETURN):
                slot.mark_validating()
                validate = True
            else:
                del state.borrowed[slot.id]
                slot.mark_idle(time.monotonic())
                self._checkin_locked(slot)

        if closing:
            await self._close_slot(slot, "shutdown")
            return

        if not validate:
            return

        discard_reason = None
        try:
            result = await self.policy.validate(slot)

            async with self._lock:
                if self._state.borrowed.get(slot.id) is not slot:
                    # Force-closed by shutdown while validating
                    return

                if self._closed:
                    self._discard_locked(slot)
                    discard_reason = "shutdown"
                elif result is ValidationResult.HEALTHY:
                    del self._state.borrowed[slot.id]
                    slot.mark_idle(time.monotonic())
                    self._checkin_locked(slot)
                else:
                    slot.failed_validation_count += 1
                    self._state.validation_failures += 1
                    self._discard_locked(slot)
                    discard_reason = "validation"
        except BaseException:
            self._reclaim_unfinished_locked(slot)
            raise

        if discard_reason == "validation":
            logger.info(f"Discarding connection {slot.id} of pool {self.name} after failed validation on return")
            self.observers.notify(PoolEvent.VALIDATION_FAILURE, slot, ValidationContext.RETURN)
            await self._close_slot(slot, discard_reason)
            self._schedule_backfill()
        elif discard_reason is not None:
            await self._close_slot(slot, discard_reason)

    @asynccontextmanager
    async def connection(self, timeout: Optional[float] = None, tag: Optional[str] = None) -> AsyncIterator[ConnectionSlot]:
        """Context manager that borrows a connection and releases it on exit."""
        slot = await self.borrow(timeout=timeout, tag=tag)
        try:
            yield slot
        finally:
            await self.release(slot)

    # -- introspection ------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def idle_count(self) -> int:
        return len(self._state.idle)

    @property
    def borrowed_count(self) -> int:
        return len(self._state.borrowed)

    @property
    def total_open(self) -> int:
        return self._state.total_open

    @property
    def waiting_count(self) -> int:
        return self._state.live_waiters()

    def check_invariants(self) -> None:
        """Assert the structural invariants of the pool state."""
        self._state.check_invariants()

    def stats(self) -> Dict[str, Any]:
        """Get connection pool statistics.

        Returns:
            Dictionary of connection pool statistics
        """
        state = self._state
        return {
            "name": self.name,
            "closed": self._closed,
            "total_open": state.total_open,
            "idle": len(state.idle),
            "borrowed": len(state.borrowed),
            "validating": len(state.validating),
            "pending_opens": state.pending_opens,
            "waiting": state.live_waiters(),
            "min_idle": self.config.min_idle,
            "max_active": self.config.max_active,
            "created": state.created_connections,
            "closed_connections": state.closed_connections,
            "borrows": state.borrows,
            "returns": state.returns,
            "timeouts": state.timeouts,
            "connect_errors": state.connect_errors,
            "validation_failures": state.validation_failures,
            "evictions": state.evictions,
            "abandoned": state.abandoned,
            "max_borrowed": state.max_borrowed,
            "sweeps": self.sweeper.runs,
        }

    # -- borrow internals ---------------------------------------------------

    async def _acquire(
        self,
        deadline: Optional[float],
        tag: Optional[str],
        stack: Optional[List[str]]
    ) -> Tuple[ConnectionSlot, bool]:
        """Get a slot in the borrowed set, waiting for capacity if needed.

        Returns:
            The slot and whether it was freshly opened
        """
        waiter = None

        async with self._lock:
            if self._closed:
                raise PoolClosedError("Pool is closed", pool=self.name)

            state = self._state
            if state.idle:
                slot = state.pop_idle()
                slot.mark_borrowed(time.monotonic(), tag, stack)
                state.add_borrowed(slot)
                return slot, False

            self._prune_waiters_locked()
            if not state.waiters and state.has_capacity():
                state.pending_opens += 1
            else:
                waiter = Waiter(asyncio.get_running_loop().create_future(), tag, stack)
                state.waiters.append(waiter)

        if waiter is not None:
            grant = await self._wait(waiter, deadline)
            if isinstance(grant, ConnectionSlot):
                return grant, False

        # Capacity for one connection is reserved for this borrower
        try:
            slot = await self._open_slot(deadline)
        except BaseException:
            self._release_reservation_locked()
            raise

        closing = False
        try:
            async with self._lock:
                self._state.pending_opens -= 1
                if self._closed:
                    slot.mark_discarded()
                    closing = True
                else:
                    self._admit_opened_locked(slot)
                    slot.mark_borrowed(time.monotonic(), tag, stack)
                    self._state.add_borrowed(slot)
        except BaseException:
            # Cancelled while waiting for the lock, before the slot was admitted
            self._drop_unadmitted_locked(slot)
            raise

        if closing:
            await self._close_slot(slot, "shutdown")
            raise PoolClosedError("Pool was shut down while opening a connection", pool=self.name)

        return slot, True

    async def _wait(self, waiter: Waiter, deadline: Optional[float]) -> Any:
        """Wait for a slot or a capacity grant handed to this waiter."""
        timeout = None if deadline is None else max(0.0, deadline - time.monotonic())

        try:
            done, _ = await asyncio.wait({waiter.future}, timeout=timeout)
        except asyncio.CancelledError:
            self._abandon_waiter_locked(waiter)
            raise

        if done:
            return waiter.future.result()

        self._abandon_waiter_locked(waiter)
        raise PoolTimeoutError(
            f"Timed out after {timeout:.3f}s waiting for a connection",
            pool=self.name
        )

    async def _validate_borrowed(self, slot: ConnectionSlot) -> bool:
        """Validate a slot before handing it out; discard it if unhealthy."""
        try:
            async with self._lock:
                slot.mark_validating()

            result = await self.policy.validate(slot)

            async with self._lock:
                if self._state.borrowed.get(slot.id) is not slot:
                    raise PoolClosedError(
                        "Pool was shut down while validating a connection",
                        pool=self.name,
                        slot_id=slot.id
                    )

                if result is ValidationResult.HEALTHY:
                    slot.mark_validated()
                    slot.last_borrowed_at = time.monotonic()
                    return True

                slot.failed_validation_count += 1
                self._state.validation_failures += 1
                self._discard_locked(slot)
        except BaseException:
            self._reclaim_unfinished_locked(slot)
            raise

        logger.info(f"Discarding connection {slot.id} of pool {self.name} after failed validation on borrow")
        self.observers.notify(PoolEvent.VALIDATION_FAILURE, slot, ValidationContext.BORROW)
        await self._close_slot(slot, "validation")
        return False

    def _hand_out(self, slot: ConnectionSlot) -> ConnectionSlot:
        self._state.borrows += 1
        logger.debug(f"Borrowed connection {slot.id} from pool {self.name}")
        self.observers.notify(PoolEvent.BORROW, slot)
        return slot

    # -- opening and closing ------------------------------------------------

    def _backoff_remaining(self) -> float:
        if self._last_connect_error_at is None:
            return 0.0
        return max(0.0, self._last_connect_error_at + self.config.reconnect_backoff - time.monotonic())

    async def _open_slot(self, deadline: Optional[float] = None) -> ConnectionSlot:
        """Open a physical connection, waiting out any reconnect backoff first.

        The returned slot is not yet counted in the pool state.

        Raises:
            ConnectError: If the factory failed to open the connection
            PoolTimeoutError: If the deadline passed during the backoff or the open
        """
        delay = self._backoff_remaining()
        if delay > 0:
            if deadline is not None:
                delay = min(delay, max(0.0, deadline - time.monotonic()))
            await asyncio.sleep(delay)
            if deadline is not None and time.monotonic() >= deadline:
                raise PoolTimeoutError("Timed out during reconnect backoff", pool=self.name)

        timeout = self.config.connect_timeout
        bounded_by_deadline = False
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise PoolTimeoutError("Timed out before opening a connection", pool=self.name)
            if remaining < timeout:
                timeout = remaining
                bounded_by_deadline = True

        try:
            handle = await asyncio.wait_for(
                self.factory.open(self.config.url, self.config.credentials),
                timeout=timeout
            )
        except ConnectError:
            self._record_connect_error()
            raise
        except asyncio.TimeoutError as e:
            if bounded_by_deadline:
                raise PoolTimeoutError(
                    f"Timed out after {timeout:.3f}s opening a connection",
                    pool=self.name
                ) from e
            self._record_connect_error()
            raise ConnectError(
                f"Timed out after {self.config.connect_timeout}s opening a connection",
                pool=self.name
            ) from e
        except Exception as e:
            self._record_connect_error()
            raise ConnectError(f"Failed to open a connection: {e}", pool=self.name) from e

        self._last_connect_error_at = None
        return ConnectionSlot(
            handle=handle,
            pool_name=self.name,
            statements=StatementCache(self.config.max_cached_statements_per_connection)
        )

    def _record_connect_error(self) -> None:
        self._last_connect_error_at = time.monotonic()
        self._state.connect_errors += 1
        logger.warning(f"Failed to open a connection for pool {self.name}")

    async def _open_idle(self, count: int) -> int:
        """Open up to ``count`` connections into the idle set.

        Returns:
            The number of connections opened
        """
        async with self._lock:
            if self._closed:
                return 0
            state = self._state
            remaining = max(0, min(count, state.max_active - state.total_open - state.pending_opens))
            state.pending_opens += remaining

        opened = 0
        try:
            while remaining > 0:
                try:
                    slot = await self._open_slot()
                except ConnectError as e:
                    logger.warning(f"Could not open an idle connection for pool {self.name}: {e}")
                    break

                closing = False
                try:
                    async with self._lock:
                        self._state.pending_opens -= 1
                        remaining -= 1
                        if self._closed:
                            slot.mark_discarded()
                            closing = True
                        else:
                            self._admit_opened_locked(slot)
                            self._checkin_locked(slot)
                except BaseException:
                    # The reservation is returned by the finally block below
                    slot.mark_discarded()
                    self._close_in_background(slot)
                    raise

                if closing:
                    await self._close_slot(slot, "shutdown")
                    break
                opened += 1
        finally:
            if remaining > 0:
                self._state.pending_opens -= remaining
                self._grant_capacity_locked()

        return opened

    async def _top_up(self) -> int:
        """Open connections until the idle set reaches ``min_idle``.

        Skipped while the reconnect backoff from a failed open is running.
        """
        if self._backoff_remaining() > 0:
            logger.debug(f"Skipping top-up of pool {self.name} during reconnect backoff")
            return 0

        async with self._lock:
            need = self.config.min_idle - len(self._state.idle)

        if need <= 0:
            return 0
        return await self._open_idle(need)

    def _schedule_backfill(self) -> None:
        """Top up toward ``min_idle`` in the background."""
        if self._closed:
            return
        task = asyncio.get_running_loop().create_task(self._top_up())
        self._backfill_tasks.add(task)
        task.add_done_callback(self._backfill_tasks.discard)

    async def _close_slot(self, slot: ConnectionSlot, reason: str) -> None:
        """Close the physical connection of a discarded slot."""
        try:
            await self.factory.close(slot.handle)
        except Exception as e:
            logger.warning(f"Error closing connection {slot.id} of pool {self.name}: {e}")

        logger.debug(f"Closed connection {slot.id} of pool {self.name} ({reason})")
        self.observers.notify(PoolEvent.EVICT, slot, reason)

    def _close_in_background(self, slot: ConnectionSlot, reason: str = "cancelled") -> None:
        """Close a discarded slot from a task, for callers that cannot await."""
        task = asyncio.get_running_loop().create_task(self._close_slot(slot, reason))
        self._closing_tasks.add(task)
        task.add_done_callback(self._closing_tasks.discard)

    # -- locked helpers -----------------------------------------------------

    def _admit_opened_locked(self, slot: ConnectionSlot) -> None:
        self._state.total_open += 1
        self._state.created_connections += 1

    def _checkin_locked(self, slot: ConnectionSlot, ordered: bool = False) -> None:
        """Give an idle slot to the first waiter, or put it in the idle set.

        Args:
            slot: A slot in the IDLE state that is in no set
            ordered: Insert by return time instead of at the head
        """
        state = self._state
        while state.waiters:
            waiter = state.waiters.popleft()
            if waiter.future.done():
                continue
            slot.mark_borrowed(time.monotonic(), waiter.tag, waiter.stack)
            state.add_borrowed(slot)
            waiter.future.set_result(slot)
            return

        if ordered:
            state.insert_idle(slot)
        else:
            state.push_idle(slot)

    def _discard_locked(self, slot: ConnectionSlot) -> None:
        """Remove a slot from the pool and free its capacity.

        The physical connection is closed afterwards by ``_close_slot``.
        """
        state = self._state
        if slot.discarded:
            return

        if state.borrowed.get(slot.id) is slot:
            del state.borrowed[slot.id]
        elif state.validating.get(slot.id) is slot:
            del state.validating[slot.id]
        else:
            state.remove_idle(slot)

        state.total_open -= 1
        state.closed_connections += 1
        slot.mark_discarded()

        self._grant_capacity_locked()
        self._check_drained_locked()

    def _grant_capacity_locked(self) -> None:
        """Reserve free capacity for waiters, oldest first."""
        state = self._state
        while state.waiters and state.has_capacity():
            waiter = state.waiters.popleft()
            if waiter.future.done():
                continue
            state.pending_opens += 1
            waiter.future.set_result(_CAPACITY)

    def _release_reservation_locked(self) -> None:
        self._state.pending_opens -= 1
        self._grant_capacity_locked()

    def _drop_unadmitted_locked(self, slot: ConnectionSlot) -> None:
        """Give back the reservation of an opened slot that never entered the pool."""
        self._release_reservation_locked()
        slot.mark_discarded()
        self._close_in_background(slot)

    def _reclaim_unfinished_locked(self, slot: ConnectionSlot) -> None:
        """Take back a slot whose borrow or return was interrupted.

        A no-op if the slot already left the borrowed set.
        """
        state = self._state
        if state.borrowed.get(slot.id) is not slot:
            return
        if slot.state not in (SlotState.BORROWED, SlotState.VALIDATING):
            return

        if self._closed:
            self._discard_locked(slot)
            self._close_in_background(slot, "shutdown")
            return

        del state.borrowed[slot.id]
        slot.mark_idle(time.monotonic())
        self._checkin_locked(slot)

    def _abandon_waiter_locked(self, waiter: Waiter) -> None:
        """Withdraw a waiter that timed out or was cancelled.

        A slot or capacity handed to it in the meantime is passed on.
        """
        future = waiter.future
        if not future.done():
            future.cancel()
            try:
                self._state.waiters.remove(waiter)
            except ValueError:
                pass
            return

        if future.cancelled() or future.exception() is not None:
            return

        grant = future.result()
        if isinstance(grant, ConnectionSlot):
            del self._state.borrowed[grant.id]
            grant.mark_idle(time.monotonic())
            self._checkin_locked(grant)
        else:
            self._release_reservation_locked()

    def _prune_waiters_locked(self) -> None:
        waiters = self._state.waiters
        while waiters and waiters[0].future.done():
            waiters.popleft()

    def _check_drained_locked(self) -> None:
        if self._drained is not None and not self._state.borrowed:
            self._drained.set()

    def __repr__(self) -> str:
        state = self._state
        return (
            f"ConnectionPool(name={self.name}, idle={len(state.idle)}, "
            f"borrowed={len(state.borrowed)}, total_open={state.total_open})"
        )

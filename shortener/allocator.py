"""Per-instance range allocator.

Each service instance reserves a contiguous block of integers from the
global counter store and mints codes from it with no further coordination.
A replacement block is reserved before the current one runs out.

State Machine
=============
::
    ┌───────────────┐  start() ok   ┌──────────────────────────────┐
    │ UNINITIALIZED │──────────────▶│ ACTIVE(cursor, end[, standby])│◀─┐
    └───────┬───────┘               └──────────────┬───────────────┘  │
            │ start() failed                       │ cursor > end      │
            ▼                                      ▼                   │
    ┌───────────────┐               promote standby, mark old EXHAUSTED ┘
    │    FAILED     │  (next_value() retries start())
    └───────────────┘

Refill Policy
=============
::
    remaining = range_end - cursor + 1        # values still available

    next_value():
        async with lock:                      # one mutual-exclusion section
            if no standby and remaining < threshold:
                sync       -> await reserve() on this call
                background -> spawn one reserve() task
            if active range used up:
                promote standby or raise RangeExhaustedError
            return cursor++

With ``range_size=1000`` and ``threshold=100`` the first range is [0, 999];
after 900 is issued 99 values remain, so the next call reserves [1000, 1999]
before issuing 901. 1000 is issued right after 999.

Key Behaviours
===============
- A value outside the currently owned active range is never returned.
- At most one reservation is in flight per instance.
- A failed refill is logged and retried on the next call; the instance
  keeps serving from what is left of its range.
- Unused tails are abandoned on shutdown and marked EXPIRED, never reused.
- Range bookkeeping in ``range_allocations`` is best effort.
"""

import asyncio
import logging
import socket
import time
from dataclasses import dataclass

from prometheus_client import Counter, Gauge
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shortener.config import RefillMode, Settings
from shortener.counter_store import GlobalCounterStore
from shortener.database import DATABASE_ERRORS
from shortener.enums import AllocatorState, RangeStatus
from shortener.exceptions import AllocatorUnavailableError, CounterStoreUnavailableError, RangeExhaustedError
from shortener.models import RangeAllocation, utcnow

__all__ = ["IdRange", "RangeAllocator", "RangeLedger", "default_instance_id"]

logger = logging.getLogger(__name__)

RANGE_RESERVATIONS_TOTAL = Counter(
    "url_shortener_range_reservations_total",
    "Ranges reserved from the global counter store",
    ["status"],
)
RANGE_REMAINING = Gauge(
    "url_shortener_range_remaining",
    "Values left in this instance's active range",
)


def default_instance_id() -> str:
    return f"{socket.gethostname()}-{int(time.time() * 1000)}"


@dataclass
class IdRange:
    """An inclusive block ``[start, end]`` owned by this instance."""

    start: int
    end: int
    cursor: int
    allocation_id: int | None = None

    @classmethod
    def of(cls, start: int, size: int) -> "IdRange":
        return cls(start=start, end=start + size - 1, cursor=start)

    @property
    def remaining(self) -> int:
        return max(self.end - self.cursor + 1, 0)

    @property
    def used_up(self) -> bool:
        return self.cursor > self.end


class RangeLedger:
    """Best-effort record of the ranges this instance has been handed."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(self, instance_id: str, id_range: IdRange) -> int | None:
        try:
            async with self._session_factory() as session:
                allocation = RangeAllocation(
                    instance_id=instance_id,
                    start_value=id_range.start,
                    end_value=id_range.end,
                    status=RangeStatus.ACTIVE,
                )
                session.add(allocation)
                await session.commit()
                return allocation.id
        except DATABASE_ERRORS as exc:
            logger.warning(f"Could not record range [{id_range.start}, {id_range.end}]: {exc}")
            return None

    async def mark(self, id_range: IdRange, status: RangeStatus) -> None:
        if id_range.allocation_id is None:
            return
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(RangeAllocation)
                    .where(RangeAllocation.id == id_range.allocation_id)
                    .values(status=status, exhausted_at=utcnow())
                )
                await session.commit()
        except DATABASE_ERRORS as exc:
            logger.warning(f"Could not mark range [{id_range.start}, {id_range.end}] {status}: {exc}")


class RangeAllocator:
    """Dispenses sequential integers from ranges reserved in the global counter store."""

    def __init__(
        self,
        store: GlobalCounterStore,
        range_size: int = 1000,
        threshold: int = 100,
        refill_mode: RefillMode = RefillMode.SYNC,
        ledger: RangeLedger | None = None,
        instance_id: str | None = None,
        timeout: float | None = 5.0,
    ) -> None:
        if range_size <= 0:
            raise ValueError("range_size must be positive")
        if not 1 <= threshold <= range_size:
            raise ValueError("threshold must be between 1 and range_size")

        self.store = store
        self.range_size = range_size
        self.threshold = threshold
        self.refill_mode = refill_mode
        self.instance_id = instance_id or default_instance_id()
        self._ledger = ledger
        self._timeout = timeout

        self._lock = asyncio.Lock()
        self._state = AllocatorState.UNINITIALIZED
        self._active: IdRange | None = None
        self._standby: IdRange | None = None
        self._refill_task: asyncio.Task[IdRange] | None = None

    @classmethod
    def from_settings(
        cls, settings: Settings, store: GlobalCounterStore, ledger: RangeLedger | None = None
    ) -> "RangeAllocator":
        return cls(
            store,
            range_size=settings.ID_RANGE_SIZE,
            threshold=settings.ID_REFILL_THRESHOLD,
            refill_mode=settings.ID_REFILL_MODE,
            ledger=ledger,
            instance_id=settings.INSTANCE_ID,
            timeout=settings.ID_ALLOCATION_TIMEOUT_SECONDS,
        )

    @property
    def state(self) -> AllocatorState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state is AllocatorState.ACTIVE

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self) -> None:
        """Reserve the first range. Fails loudly if the counter store is unreachable."""
        async with self._lock:
            await self._start_locked()

    async def _start_locked(self) -> None:
        if self._state is AllocatorState.CLOSED:
            raise AllocatorUnavailableError("Range allocator is closed")
        if self._active is not None:
            return

        logger.info(f"Initializing range allocator for instance {self.instance_id}")
        try:
            await self.store.initialize()
            self._active = await self._reserve()
        except CounterStoreUnavailableError:
            self._state = AllocatorState.FAILED
            logger.critical(f"Range allocator for {self.instance_id} could not obtain an initial range")
            raise

        self._state = AllocatorState.ACTIVE
        self._update_gauge()
        logger.info(f"Range allocator initialized with range [{self._active.start}, {self._active.end}]")

    async def close(self) -> None:
        """Abandon unused ranges; they are marked EXPIRED and never handed out again."""
        async with self._lock:
            if self._refill_task is not None and not self._refill_task.done():
                self._refill_task.cancel()
                try:
                    await self._refill_task
                except (asyncio.CancelledError, CounterStoreUnavailableError):
                    pass
            self._harvest_refill()

            for id_range in (self._active, self._standby):
                if id_range is not None and self._ledger is not None:
                    await self._ledger.mark(id_range, RangeStatus.EXPIRED)
            if self._active is not None:
                logger.info(
                    f"Range allocator closing, abandoning {self._active.remaining} values of "
                    f"[{self._active.start}, {self._active.end}]"
                )
            self._active = None
            self._standby = None
            self._state = AllocatorState.CLOSED

    # ========================================================================
    # HOT PATH
    # ========================================================================

    async def next_value(self) -> int:
        """Return the next integer owned by this instance.

        Raises:
            CounterStoreUnavailableError: No range could ever be obtained
            RangeExhaustedError: The active range is used up and no replacement exists
        """
        async with self._lock:
            if self._active is None:
                await self._start_locked()
            active = self._active

            self._harvest_refill()
            if self._standby is None and active.remaining < self.threshold:
                await self._refill_locked()

            if active.used_up:
                active = await self._promote_locked()

            if not active.start <= active.cursor <= active.end:
                raise RangeExhaustedError(
                    f"Cursor {active.cursor} outside owned range [{active.start}, {active.end}]"
                )
            value = active.cursor
            active.cursor += 1
            self._update_gauge()
            return value

    def snapshot(self) -> dict:
        """Current range information for monitoring."""
        active = self._active
        return {
            "instance_id": self.instance_id,
            "state": self._state.value,
            "refill_mode": self.refill_mode.value,
            "cursor": active.cursor if active else None,
            "range_end": active.end if active else None,
            "remaining": active.remaining if active else 0,
            "standby": [self._standby.start, self._standby.end] if self._standby else None,
            "refill_in_flight": self._refill_task is not None and not self._refill_task.done(),
        }

    # ========================================================================
    # PRIVATE HELPERS (lock must be held)
    # ========================================================================

    async def _reserve(self) -> IdRange:
        """Obtain a brand-new range from the counter store and record it."""
        try:
            if self._timeout is None:
                start = await self.store.allocate_range(self.range_size)
            else:
                start = await asyncio.wait_for(self.store.allocate_range(self.range_size), self._timeout)
        except TimeoutError as exc:
            RANGE_RESERVATIONS_TOTAL.labels(status="failed").inc()
            raise CounterStoreUnavailableError(
                f"Counter store did not answer within {self._timeout}s"
            ) from exc
        except CounterStoreUnavailableError:
            RANGE_RESERVATIONS_TOTAL.labels(status="failed").inc()
            raise

        id_range = IdRange.of(start, self.range_size)
        if self._ledger is not None:
            id_range.allocation_id = await self._ledger.record(self.instance_id, id_range)
        RANGE_RESERVATIONS_TOTAL.labels(status="success").inc()
        logger.info(f"Reserved range [{id_range.start}, {id_range.end}] for instance {self.instance_id}")
        return id_range

    async def _refill_locked(self) -> None:
        remaining = self._active.remaining
        if self.refill_mode is RefillMode.BACKGROUND:
            if self._refill_task is None:
                logger.info(f"Range running low ({remaining} left), reserving next range in background")
                self._refill_task = asyncio.create_task(self._reserve())
            return

        logger.warning(f"Range running low. Remaining codes: {remaining}. Allocating new range...")
        try:
            self._standby = await self._reserve()
        except CounterStoreUnavailableError as exc:
            logger.error(f"Range refill failed, will retry on next call: {exc}")

    def _harvest_refill(self) -> None:
        """Install the result of a finished background reservation."""
        task = self._refill_task
        if task is None or not task.done():
            return
        self._refill_task = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background range refill failed, will retry on next call: {exc}")
            return
        self._standby = task.result()

    async def _promote_locked(self) -> IdRange:
        if self._standby is None and self._refill_task is not None:
            # Background reservation still running and nothing left to hand out.
            await asyncio.wait({self._refill_task})
            self._harvest_refill()

        exhausted = self._active
        if self._standby is None:
            logger.error(
                f"Range [{exhausted.start}, {exhausted.end}] exhausted and no replacement range is available"
            )
            raise RangeExhaustedError(
                f"Range [{exhausted.start}, {exhausted.end}] exhausted before a new range could be reserved"
            )

        if self._ledger is not None:
            await self._ledger.mark(exhausted, RangeStatus.EXHAUSTED)
        self._active, self._standby = self._standby, None
        logger.info(
            f"Range [{exhausted.start}, {exhausted.end}] exhausted, "
            f"switched to [{self._active.start}, {self._active.end}]"
        )
        return self._active

    def _update_gauge(self) -> None:
        RANGE_REMAINING.set(self._active.remaining if self._active else 0)

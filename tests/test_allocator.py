"""Range allocator behaviour: refill threshold, promotion, failure and concurrency."""

import asyncio

import pytest
from sqlalchemy import select

from shortener.allocator import IdRange, RangeAllocator, RangeLedger
from shortener.codec import encode
from shortener.config import RefillMode
from shortener.counter_store import DatabaseCounterStore
from shortener.enums import AllocatorState, RangeStatus
from shortener.exceptions import AllocatorUnavailableError, CounterStoreUnavailableError, RangeExhaustedError
from shortener.models import RangeAllocation


def test_id_range_bounds():
    id_range = IdRange.of(1000, 1000)
    assert (id_range.start, id_range.end, id_range.cursor) == (1000, 1999, 1000)
    assert id_range.remaining == 1000
    id_range.cursor = 2000
    assert id_range.remaining == 0
    assert id_range.used_up


@pytest.mark.parametrize("range_size, threshold", [(0, 1), (100, 0), (100, 101)])
def test_invalid_policy_rejected(memory_store, range_size, threshold):
    with pytest.raises(ValueError):
        RangeAllocator(memory_store, range_size=range_size, threshold=threshold)


@pytest.mark.asyncio
async def test_refill_happens_before_issuing_901(memory_store):
    allocator = RangeAllocator(memory_store, range_size=1000, threshold=100)
    await allocator.start()
    assert memory_store.calls == 1

    issued = [await allocator.next_value() for _ in range(901)]
    assert issued == list(range(901))
    # 100 values (900..999) were left when 900 was issued: no refill yet.
    assert memory_store.calls == 1

    assert await allocator.next_value() == 901
    assert memory_store.calls == 2
    assert allocator.snapshot()["standby"] == [1000, 1999]


@pytest.mark.asyncio
async def test_switches_to_next_range_after_999(memory_store):
    allocator = RangeAllocator(memory_store, range_size=1000, threshold=100)

    issued = [await allocator.next_value() for _ in range(1001)]

    assert issued[-2:] == [999, 1000]
    assert encode(issued[0]) == "0"
    assert encode(issued[-1]) == "g8"
    assert memory_store.calls == 2


@pytest.mark.asyncio
async def test_values_unique_across_many_ranges(memory_store):
    allocator = RangeAllocator(memory_store, range_size=10, threshold=3)

    issued = [await allocator.next_value() for _ in range(95)]

    assert issued == list(range(95))


@pytest.mark.asyncio
async def test_start_failure_is_reported_and_retried(memory_store):
    memory_store.fail = True
    allocator = RangeAllocator(memory_store, range_size=100, threshold=10)

    with pytest.raises(CounterStoreUnavailableError):
        await allocator.start()
    assert allocator.state is AllocatorState.FAILED
    assert not allocator.ready

    memory_store.fail = False
    assert await allocator.next_value() == 0
    assert allocator.state is AllocatorState.ACTIVE


@pytest.mark.asyncio
async def test_exhaustion_without_replacement_range(memory_store):
    allocator = RangeAllocator(memory_store, range_size=20, threshold=5)
    await allocator.start()
    memory_store.fail = True

    issued = [await allocator.next_value() for _ in range(20)]
    assert issued == list(range(20))

    with pytest.raises(RangeExhaustedError):
        await allocator.next_value()

    # The store recovers: the next call reserves and continues.
    memory_store.fail = False
    assert await allocator.next_value() == 20


@pytest.mark.asyncio
async def test_slow_store_times_out(memory_store):
    memory_store.delay = 1.0
    allocator = RangeAllocator(memory_store, range_size=100, threshold=10, timeout=0.05)

    with pytest.raises(CounterStoreUnavailableError):
        await allocator.start()


@pytest.mark.asyncio
async def test_background_refill_mode(memory_store):
    allocator = RangeAllocator(memory_store, range_size=50, threshold=10, refill_mode=RefillMode.BACKGROUND)

    issued = []
    for _ in range(120):
        issued.append(await allocator.next_value())
        await asyncio.sleep(0)

    assert issued == list(range(120))
    assert memory_store.calls == 3


@pytest.mark.asyncio
async def test_background_refill_awaited_when_range_runs_out(memory_store):
    memory_store.delay = 0.05
    allocator = RangeAllocator(memory_store, range_size=5, threshold=5, refill_mode=RefillMode.BACKGROUND)

    issued = [await allocator.next_value() for _ in range(12)]

    assert issued == list(range(12))


@pytest.mark.asyncio
async def test_concurrent_callers_never_share_a_value(memory_store):
    allocator = RangeAllocator(memory_store, range_size=25, threshold=5)

    issued = await asyncio.gather(*(allocator.next_value() for _ in range(300)))

    assert len(set(issued)) == 300


@pytest.mark.asyncio
async def test_instances_sharing_a_store_get_disjoint_values(memory_store):
    allocators = [
        RangeAllocator(memory_store, range_size=30, threshold=5, instance_id=f"instance-{i}") for i in range(3)
    ]

    async def draw(allocator: RangeAllocator) -> list[int]:
        values = []
        for _ in range(100):
            values.append(await allocator.next_value())
            await asyncio.sleep(0)
        return values

    results = await asyncio.gather(*(draw(a) for a in allocators))
    issued = [value for values in results for value in values]

    assert len(issued) == len(set(issued)) == 300
    for values in results:
        assert values == sorted(values)


@pytest.mark.asyncio
async def test_closed_allocator_refuses_values(memory_store):
    allocator = RangeAllocator(memory_store, range_size=100, threshold=10)
    await allocator.start()
    await allocator.close()

    assert allocator.state is AllocatorState.CLOSED
    with pytest.raises(AllocatorUnavailableError):
        await allocator.next_value()


@pytest.mark.asyncio
async def test_ledger_tracks_range_lifecycle(memory_store, session_factory):
    allocator = RangeAllocator(
        memory_store, range_size=10, threshold=2, ledger=RangeLedger(session_factory), instance_id="web-1"
    )

    for _ in range(11):
        await allocator.next_value()
    await allocator.close()

    async with session_factory() as session:
        rows = (await session.execute(select(RangeAllocation).order_by(RangeAllocation.start_value))).scalars().all()

    assert [(r.start_value, r.end_value) for r in rows] == [(0, 9), (10, 19)]
    assert all(r.instance_id == "web-1" for r in rows)
    assert [r.status for r in rows] == [RangeStatus.EXHAUSTED, RangeStatus.EXPIRED]
    assert all(r.exhausted_at is not None for r in rows)


def test_snapshot_before_start(memory_store):
    allocator = RangeAllocator(memory_store, instance_id="web-2")
    snapshot = allocator.snapshot()

    assert snapshot["instance_id"] == "web-2"
    assert snapshot["state"] == "uninitialized"
    assert snapshot["remaining"] == 0


@pytest.mark.asyncio
async def test_unreachable_database_during_refill_keeps_serving(memory_store, unreachable_session_factory):
    allocator = RangeAllocator(memory_store, range_size=20, threshold=5)
    await allocator.start()
    allocator.store = DatabaseCounterStore(unreachable_session_factory)

    issued = [await allocator.next_value() for _ in range(20)]

    assert issued == list(range(20))
    with pytest.raises(RangeExhaustedError):
        await allocator.next_value()


@pytest.mark.asyncio
async def test_unreachable_database_at_start_marks_failed(unreachable_session_factory):
    allocator = RangeAllocator(DatabaseCounterStore(unreachable_session_factory), range_size=20, threshold=5)

    with pytest.raises(CounterStoreUnavailableError):
        await allocator.start()
    assert allocator.state is AllocatorState.FAILED


@pytest.mark.asyncio
async def test_ledger_outage_does_not_fail_reservations(memory_store, unreachable_session_factory):
    allocator = RangeAllocator(
        memory_store, range_size=10, threshold=2, ledger=RangeLedger(unreachable_session_factory)
    )

    issued = [await allocator.next_value() for _ in range(15)]
    await allocator.close()

    assert issued == list(range(15))
    assert allocator.state is AllocatorState.CLOSED

"""Global counter store: the single point where service instances contend.

Every instance asks the store for a contiguous block of integers and then
mints codes from that block without further coordination. The store must
guarantee that no two calls ever receive overlapping blocks, across
processes and under arbitrary interleaving.

Backends
========
::
    ┌──────────────────────┐   UPDATE ... SET current_counter =
    │ DatabaseCounterStore │── current_counter + :size RETURNING
    └──────────────────────┘   (row lock held by the UPDATE itself)

    ┌──────────────────────┐
    │  RedisCounterStore   │── INCRBY id_allocator:url :size
    └──────────────────────┘

    ┌──────────────────────┐   POST {KEYGEN_SERVICE_URL}/allocate
    │  KeygenCounterStore  │── {"size": n} -> {"start": s, "end": e}
    └──────────────────────┘

Key Behaviours
===============
- ``allocate_range(size)`` returns the first integer of ``[start, start + size)``.
- The counter starts at 0 and never decreases.
- Every backend failure surfaces as ``CounterStoreUnavailableError``.
"""

import logging
from abc import ABC, abstractmethod

import httpx
import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shortener.config import CounterBackend, Settings
from shortener.database import DATABASE_ERRORS
from shortener.exceptions import CounterStoreUnavailableError
from shortener.models import GLOBAL_COUNTER_ID, GlobalCounter, utcnow
from shortener.schemas import AllocateRequest, AllocateResponse

__all__ = [
    "DatabaseCounterStore",
    "GlobalCounterStore",
    "KeygenCounterStore",
    "RedisCounterStore",
    "build_counter_store",
]

logger = logging.getLogger(__name__)


class GlobalCounterStore(ABC):
    """Durable single-value counter handing out disjoint integer ranges."""

    name: str = "abstract"

    async def initialize(self) -> None:
        """Create the counter state if it does not exist yet."""

    @abstractmethod
    async def allocate_range(self, size: int) -> int:
        """Atomically advance the counter by ``size`` and return its previous value."""

    async def close(self) -> None:
        pass


def _check_size(size: int) -> None:
    if size <= 0:
        raise ValueError(f"range size must be positive, got {size!r}")


class DatabaseCounterStore(GlobalCounterStore):
    name = "database"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], range_size: int = 1000) -> None:
        self._session_factory = session_factory
        self._range_size = range_size

    async def initialize(self) -> None:
        async with self._session_factory() as session:
            try:
                if await session.get(GlobalCounter, GLOBAL_COUNTER_ID) is not None:
                    return
                session.add(GlobalCounter(id=GLOBAL_COUNTER_ID, current_counter=0, range_size=self._range_size))
                await session.commit()
                logger.info("Created global counter row")
            except IntegrityError:
                # Another instance created the row between our read and insert.
                await session.rollback()
            except DATABASE_ERRORS as exc:
                raise CounterStoreUnavailableError(f"Failed to initialize global counter: {exc}") from exc

    async def allocate_range(self, size: int) -> int:
        _check_size(size)
        stmt = (
            update(GlobalCounter)
            .where(GlobalCounter.id == GLOBAL_COUNTER_ID)
            .values(current_counter=GlobalCounter.current_counter + size, last_updated=utcnow())
            .returning(GlobalCounter.current_counter)
            .execution_options(synchronize_session=False)
        )

        for _ in range(2):
            async with self._session_factory() as session:
                try:
                    advanced = (await session.execute(stmt)).scalar_one_or_none()
                    if advanced is not None:
                        await session.commit()
                        return advanced - size
                    await session.rollback()
                except DATABASE_ERRORS as exc:
                    raise CounterStoreUnavailableError(f"Global counter update failed: {exc}") from exc
            # Counter row missing: create it and try once more.
            await self.initialize()

        raise CounterStoreUnavailableError("Global counter row is missing")


class RedisCounterStore(GlobalCounterStore):
    name = "redis"

    def __init__(self, client: redis.Redis, key: str) -> None:
        self._client = client
        self._key = key

    async def initialize(self) -> None:
        try:
            await self._client.set(self._key, 0, nx=True)
        except RedisError as exc:
            raise CounterStoreUnavailableError(f"Failed to initialize Redis counter: {exc}") from exc

    async def allocate_range(self, size: int) -> int:
        _check_size(size)
        try:
            end_exclusive = await self._client.incrby(self._key, size)
        except RedisError as exc:
            raise CounterStoreUnavailableError(f"Redis INCRBY failed: {exc}") from exc
        return int(end_exclusive) - size


class KeygenCounterStore(GlobalCounterStore):
    """Client for the standalone keygen service (see ``shortener.keygen``)."""

    name = "keygen"

    def __init__(
        self,
        base_url: str,
        timeout: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport

    async def allocate_range(self, size: int) -> int:
        _check_size(size)
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url, timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post("/allocate", json=AllocateRequest(size=size).model_dump())
            response.raise_for_status()
            payload = AllocateResponse.model_validate(response.json())
        except (httpx.HTTPError, ValueError) as exc:
            raise CounterStoreUnavailableError(f"Keygen service allocation failed: {exc}") from exc

        if payload.end - payload.start + 1 != size:
            raise CounterStoreUnavailableError(
                f"Keygen service returned [{payload.start}, {payload.end}] for a request of {size}"
            )
        return payload.start


def build_counter_store(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: redis.Redis,
) -> GlobalCounterStore:
    if settings.COUNTER_BACKEND is CounterBackend.REDIS:
        return RedisCounterStore(redis_client, settings.ID_ALLOCATOR_KEY)
    if settings.COUNTER_BACKEND is CounterBackend.KEYGEN:
        return KeygenCounterStore(settings.KEYGEN_SERVICE_URL, timeout=settings.KEYGEN_TIMEOUT_SECONDS)
    return DatabaseCounterStore(session_factory, range_size=settings.ID_RANGE_SIZE)

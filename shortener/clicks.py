"""Background workers: click accounting and expired-URL cleanup.

Click Flow
==========
::
    GET /{code}
        │
        ▼
    ClickTracker.record(code)       # in-memory, never blocks, never raises
        │
        ▼  every CLICK_FLUSH_INTERVAL_SECONDS or CLICK_FLUSH_THRESHOLD clicks
    ┌───────────────────────────┐
    │ flush(): swap the buffer, │
    │ one UPDATE per short code │──▶ urls.click_count += delta
    └───────────────────────────┘
        │ failure
        ▼
    merge the batch back, log, retry on the next flush

Key Behaviours
===============
- Click persistence never adds latency to, or fails, a redirect.
- Counts are eventually consistent; ``pending(code)`` exposes what is
  still buffered so statistics can include it.
- ``stop()`` performs a final flush.
- ``ExpirySweeper`` periodically soft-deletes entries past ``expires_at``
  and evicts them from the redirect cache.
"""

import asyncio
import collections
import contextlib
import logging

from prometheus_client import Counter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shortener.cache import RedirectCache
from shortener.database import DATABASE_ERRORS
from shortener.registry import CodeRegistry

__all__ = ["ClickTracker", "ExpirySweeper"]

logger = logging.getLogger(__name__)

CLICKS_RECORDED_TOTAL = Counter(
    "url_shortener_clicks_recorded_total",
    "Clicks accepted into the in-memory buffer",
)
CLICK_FLUSHES_TOTAL = Counter(
    "url_shortener_click_flushes_total",
    "Click buffer flushes",
    ["status"],
)
EXPIRED_URLS_TOTAL = Counter(
    "url_shortener_expired_urls_total",
    "Codes retired by the expiry sweeper",
)


class ClickTracker:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        flush_interval: float = 5.0,
        flush_threshold: int = 100,
    ) -> None:
        self._session_factory = session_factory
        self._flush_interval = flush_interval
        self._flush_threshold = flush_threshold
        self._pending: collections.Counter[str] = collections.Counter()
        self._buffered = 0
        self._wakeup = asyncio.Event()
        self._flush_lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None

    def record(self, code: str, delta: int = 1) -> None:
        self._pending[code] += delta
        self._buffered += delta
        CLICKS_RECORDED_TOTAL.inc(delta)
        if self._buffered >= self._flush_threshold:
            self._wakeup.set()

    def pending(self, *codes: str) -> int:
        return sum(self._pending.get(code, 0) for code in codes)

    async def flush(self) -> int:
        """Persist everything buffered so far. Returns the number of clicks written."""
        async with self._flush_lock:
            if not self._pending:
                return 0
            batch, self._pending = self._pending, collections.Counter()
            self._buffered = 0

            written = 0
            try:
                async with self._session_factory() as session:
                    registry = CodeRegistry(session)
                    for code, delta in list(batch.items()):
                        await registry.increment_clicks(code, delta)
                        written += delta
                        del batch[code]
            except Exception as exc:
                CLICK_FLUSHES_TOTAL.labels(status="failed").inc()
                logger.error(f"Click flush failed, {sum(batch.values())} clicks kept for retry: {exc}")
                self._pending.update(batch)
                self._buffered += sum(batch.values())
                return written
            except asyncio.CancelledError:
                # Shutdown mid-flush: stop() flushes what is left.
                self._pending.update(batch)
                self._buffered += sum(batch.values())
                raise

            CLICK_FLUSHES_TOTAL.labels(status="success").inc()
            logger.debug(f"Flushed {written} clicks")
            return written

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="click-flusher")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self.flush()

    async def _run(self) -> None:
        while True:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._flush_interval)
            self._wakeup.clear()
            try:
                await self.flush()
            except Exception as exc:
                logger.error(f"Click flusher iteration failed: {exc}")


class ExpirySweeper:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: RedirectCache,
        interval: float = 300.0,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._interval = interval
        self._task: asyncio.Task[None] | None = None

    async def sweep(self) -> list[str]:
        try:
            async with self._session_factory() as session:
                retired = await CodeRegistry(session).deactivate_expired()
        except DATABASE_ERRORS as exc:
            logger.error(f"Expiry sweep failed: {exc}")
            return []

        if retired:
            await self._cache.evict(*retired)
            EXPIRED_URLS_TOTAL.inc(len(retired))
            logger.info(f"Expiry sweep retired {len(retired)} codes")
        return retired

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="expiry-sweeper")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.sweep()
            except Exception as exc:
                logger.error(f"Expiry sweeper iteration failed: {exc}")

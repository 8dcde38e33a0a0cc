"""Dependency injection with a singleton service manager.

Shared, long-lived components (Redis clients, redirect cache, range allocator,
click tracker, expiry sweeper) are built once by ``ServiceManager``. The only
per-request resource is the database session, bundled with the shared
components into a ``RequestContext``.

::
    ┌───────────────────────┐        ┌──────────────────────────┐
    │ ServiceManager        │        │ RequestContext           │
    │ (process singleton)   │◀───────│ database (per request)   │
    │ • settings / logger   │        │ request_id / client_ip   │
    │ • cache (Redis)       │        └────────────┬─────────────┘
    │ • counter store       │                     ▼
    │ • RangeAllocator      │        ┌──────────────────────────┐
    │ • ClickTracker        │        │ URLShorteningService     │
    │ • ExpirySweeper       │        │ .from_context(ctx)       │
    └───────────────────────┘        └──────────────────────────┘
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

import redis.asyncio as redis
from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shortener.allocator import RangeAllocator, RangeLedger
from shortener.cache import RedirectCache
from shortener.clicks import ClickTracker, ExpirySweeper
from shortener.config import Settings, get_settings
from shortener.counter_store import GlobalCounterStore, build_counter_store
from shortener.database import async_session, get_db
from shortener.redis import get_redis, get_redis_read
from shortener.url_service import URLShorteningService

__all__ = [
    "RequestContext",
    "ServiceManager",
    "get_current_owner",
    "get_request_context",
    "get_service_manager",
    "get_url_service",
    "require_owner",
]


# ============================================================================
# SINGLETON SERVICE MANAGER
# ============================================================================


class ServiceManager:
    """Singleton service manager for shared resources.

    Components can be injected through ``initialize`` so tests can run the
    whole stack against sqlite and an in-memory Redis double.
    """

    _instance: Optional["ServiceManager"] = None
    _initialized: bool = False

    def __new__(cls) -> "ServiceManager":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def initialize(
        self,
        settings: Settings | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        cache_writer: redis.Redis | None = None,
        cache_reader: redis.Redis | None = None,
        counter_store: GlobalCounterStore | None = None,
    ) -> None:
        """Build shared components once. The allocator is created but not started."""
        if self._initialized:
            return

        self.settings = settings or get_settings()
        self.logger = self._setup_logger()
        self.session_factory = session_factory or async_session
        self.cache_writer = cache_writer or await get_redis()
        self.cache_reader = cache_reader or (cache_writer if cache_writer is not None else await get_redis_read())

        self.cache = RedirectCache(self.cache_writer, self.cache_reader, ttl_seconds=self.settings.CACHE_TTL_SECONDS)
        self.counter_store = counter_store or build_counter_store(
            self.settings, self.session_factory, self.cache_writer
        )
        self.allocator = RangeAllocator.from_settings(
            self.settings, self.counter_store, ledger=RangeLedger(self.session_factory)
        )
        self.clicks = ClickTracker(
            self.session_factory,
            flush_interval=self.settings.CLICK_FLUSH_INTERVAL_SECONDS,
            flush_threshold=self.settings.CLICK_FLUSH_THRESHOLD,
        )
        self.sweeper = ExpirySweeper(
            self.session_factory, self.cache, interval=self.settings.EXPIRY_SWEEP_INTERVAL_SECONDS
        )
        self._initialized = True
        self.logger.info(
            f"Service manager initialized (counter backend: {self.counter_store.name}, "
            f"instance: {self.allocator.instance_id})"
        )

    def _setup_logger(self) -> logging.Logger:
        logger = logging.getLogger("shortener")
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            handler.setFormatter(formatter)
            logger.addHandler(handler)
            logger.setLevel(logging.INFO)
        return logger

    def start_workers(self) -> None:
        self.clicks.start()
        self.sweeper.start()

    async def cleanup(self) -> None:
        """Stop workers, flush buffered clicks and release the allocator's ranges."""
        if not self._initialized:
            return
        await self.sweeper.stop()
        await self.clicks.stop()
        await self.allocator.close()
        await self.counter_store.close()
        self._initialized = False


# Global singleton instance
_service_manager = ServiceManager()


# ============================================================================
# LIGHTWEIGHT REQUEST CONTEXT
# ============================================================================


@dataclass
class RequestContext:
    """Per-request view over the shared components.

    Attributes:
        database: Async database session (only per-request resource)
        service_manager: Singleton service manager with shared resources
        request_id: Unique identifier for this request
        client_ip: Client IP address
        start_time: Request start timestamp
        tags: Request tags for categorization
    """

    database: AsyncSession
    service_manager: ServiceManager
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    client_ip: Optional[str] = None
    start_time: float = field(default_factory=time.time)
    tags: list[str] = field(default_factory=list)

    @property
    def cache(self) -> RedirectCache:
        return self.service_manager.cache

    @property
    def allocator(self) -> RangeAllocator:
        return self.service_manager.allocator

    @property
    def clicks(self) -> ClickTracker:
        return self.service_manager.clicks

    @property
    def settings(self) -> Settings:
        return self.service_manager.settings

    @property
    def logger(self) -> logging.LoggerAdapter:
        """Shared logger carrying this request's identifiers."""
        return logging.LoggerAdapter(
            self.service_manager.logger,
            {"request_id": self.request_id, "client_ip": self.client_ip, "tags": ",".join(self.tags)},
        )

    def add_tag(self, tag: str) -> None:
        if tag not in self.tags:
            self.tags.append(tag)

    def get_duration(self) -> float:
        """Request duration in milliseconds."""
        return (time.time() - self.start_time) * 1000


# ============================================================================
# DEPENDENCY FUNCTIONS
# ============================================================================


async def get_service_manager() -> ServiceManager:
    if not _service_manager._initialized:
        await _service_manager.initialize()
    return _service_manager


async def get_request_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
    manager: ServiceManager = Depends(get_service_manager),
) -> RequestContext:
    return RequestContext(
        database=db,
        service_manager=manager,
        request_id=request.headers.get("x-request-id") or str(uuid.uuid4()),
        client_ip=request.client.host if request.client else None,
    )


def get_url_service(ctx: RequestContext = Depends(get_request_context)) -> URLShorteningService:
    return URLShorteningService.from_context(ctx)


def get_current_owner(x_owner_id: str | None = Header(default=None)) -> str | None:
    """Owner identity from the ``X-Owner-Id`` header; ``None`` means anonymous."""
    if x_owner_id is None:
        return None
    return x_owner_id.strip() or None


def require_owner(owner: str | None = Depends(get_current_owner)) -> str:
    if owner is None:
        raise HTTPException(status_code=401, detail="X-Owner-Id header required")
    return owner

"""URL Shortener Service Layer - Core Business Logic

This module orchestrates code minting (allocator + codec + registry) and
redirect resolution (cache + registry + click accounting).

Architecture Overview
==================
::
    ┌─────────────────────────────────────────────────────────────┐
    │                    URLShorteningService                     │
    │  ┌─────────────────┐  ┌─────────────────┐  ┌──────────────┐ │
    │  │ RangeAllocator  │  │  CodeRegistry   │  │RedirectCache │ │
    │  │ • next_value()  │  │ • put / lookup  │  │ • get / set  │ │
    │  │ • range refill  │  │ • soft delete   │  │ • evict      │ │
    │  └─────────────────┘  └─────────────────┘  └──────────────┘ │
    │                        ┌─────────────────┐                  │
    │                        │  ClickTracker   │                  │
    │                        │ • record (sync) │                  │
    │                        └─────────────────┘                  │
    └─────────────────────────────────────────────────────────────┘
                │                    │                    │
                ▼                    ▼                    ▼
    ┌─────────────────┐  ┌─────────────────┐  ┌─────────────────┐
    │ Counter store   │  │   PostgreSQL    │  │     Redis       │
    └─────────────────┘  └─────────────────┘  └─────────────────┘

URL Creation Flow
-----------------
::
    validate URL ──▶ validate alias format + availability
         │                       (nothing allocated yet)
         ▼
    allocator.next_value() ──▶ encode() ──▶ reserved / taken? ──yes──┐
         ▲                                      │ no                  │
         └──────────────── retry ◀──────────────┼─────────────────────┘
                                                ▼
                                registry.put(code, alias) in one transaction
                                                │
                                                ▼
                                        warm redirect cache

Redirect Flow
-------------
::
    cache.get(code) ──hit──────────────────────────────┐
         │ miss                                         │
         ▼                                              ▼
    registry.get_entry(code) ──▶ cache.set(ttl) ──▶ clicks.record(code) ──▶ target
         │ not found
         ▼
    UrlNotFoundError (404)

Key Behaviours
===============
- Invalid input is rejected before any allocation or persistence.
- A generated code that is already taken is skipped, never surfaced.
- A taken custom alias surfaces as ``AliasTakenError``.
- Allocator failures stop creation only; redirects keep working.
- Cache TTL is bounded by ``CACHE_TTL_SECONDS`` and by the entry's expiry.
"""

import datetime
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge, Histogram

from shortener import codec
from shortener.enums import CacheStatus, RequestStatus
from shortener.exceptions import (
    AliasTakenError,
    AllocatorUnavailableError,
    CodeAlreadyExistsError,
    ConflictError,
    InvalidInputError,
    UrlNotFoundError,
)
from shortener.models import CustomAlias, ShortURL, utcnow
from shortener.registry import CodeRegistry, OwnedURL

if TYPE_CHECKING:
    from shortener.dependencies import RequestContext

__all__ = ["PerformanceMetrics", "ShortenResult", "URLShorteningService", "URLStatistics"]


# ============================================================================
# PROMETHEUS METRICS
# ============================================================================

URL_CREATION_REQUESTS_TOTAL = Counter(
    "url_shortener_creation_requests_total",
    "Total URL creation requests",
    ["status"],
)
URL_LOOKUP_REQUESTS_TOTAL = Counter(
    "url_shortener_lookup_requests_total",
    "Total URL lookup requests",
    ["status", "cache_hit"],
)
URL_CREATION_DURATION = Histogram(
    "url_shortener_creation_duration_seconds",
    "Time taken to create short URLs",
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)
URL_LOOKUP_DURATION = Histogram(
    "url_shortener_lookup_duration_seconds",
    "Time taken to resolve short codes",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25],
)
CODE_COLLISIONS_TOTAL = Counter(
    "url_shortener_code_collisions_total",
    "Generated codes skipped because they were taken or reserved",
)
CACHE_HIT_RATE = Gauge(
    "url_shortener_cache_hit_rate",
    "Cache hit rate percentage for this service instance",
)


# ============================================================================
# DATA STRUCTURES
# ============================================================================


@dataclass
class PerformanceMetrics:
    """Performance metrics for service operations."""

    operation_count: int = 0
    total_duration: float = 0.0
    cache_hits: int = 0
    cache_misses: int = 0

    @property
    def average_duration(self) -> float:
        return self.total_duration / max(self.operation_count, 1)

    @property
    def cache_hit_rate(self) -> float:
        total_requests = self.cache_hits + self.cache_misses
        return (self.cache_hits / max(total_requests, 1)) * 100


@dataclass
class ShortenResult:
    entry: ShortURL
    custom_code: str | None = None


@dataclass
class URLStatistics:
    entry: ShortURL
    clicks: int
    aliases: list[str] = field(default_factory=list)


# ============================================================================
# CORE SERVICE CLASS
# ============================================================================


class URLShorteningService:
    """Core service class for URL shortening operations.

    Example:
        >>> service = URLShorteningService.from_context(ctx)
        >>> result = await service.create_short_url("https://example.com")
        >>> await service.resolve(result.entry.short_code)
        'https://example.com'
    """

    def __init__(self, ctx: "RequestContext"):
        self._db = ctx.database
        self._registry = CodeRegistry(ctx.database)
        self._cache = ctx.cache
        self._allocator = ctx.allocator
        self._clicks = ctx.clicks
        self._logger = ctx.logger
        self._settings = ctx.settings
        self._metrics = PerformanceMetrics()

    @classmethod
    def from_context(cls, ctx: "RequestContext") -> "URLShorteningService":
        return cls(ctx)

    # ========================================================================
    # PUBLIC API METHODS
    # ========================================================================

    async def create_short_url(
        self,
        target_url: str,
        custom_code: str | None = None,
        owner: str | None = None,
        expires_at: datetime.datetime | None = None,
    ) -> ShortenResult:
        """Mint a short code for ``target_url`` and optionally attach a custom alias.

        Raises:
            InvalidInputError: Malformed URL or custom code (nothing allocated)
            AliasTakenError: The custom alias is already in use (nothing persisted)
            AllocatorUnavailableError: This instance cannot mint codes right now
        """
        start_time = time.perf_counter()
        status = RequestStatus.ERROR

        try:
            target_url = codec.validate_target_url(target_url)
            if custom_code is not None:
                codec.validate_custom_code(custom_code)
                if await self._registry.is_taken(custom_code):
                    raise AliasTakenError(custom_code)

            entry = await self._store_with_fresh_code(target_url, owner, expires_at, custom_code)
            await self._warm_cache(entry, custom_code)

            status = RequestStatus.SUCCESS
            self._logger.info(
                f"URL created: {entry.short_code}"
                + (f" (alias {custom_code})" if custom_code else "")
                + f" -> {target_url}"
            )
            return ShortenResult(entry=entry, custom_code=custom_code)

        except InvalidInputError as exc:
            status = RequestStatus.VALIDATION_ERROR
            self._logger.warning(f"URL creation rejected: {exc}")
            raise
        except ConflictError as exc:
            status = RequestStatus.CONFLICT
            self._logger.warning(f"URL creation conflict: {exc}")
            raise
        except AllocatorUnavailableError as exc:
            status = RequestStatus.UNAVAILABLE
            self._logger.error(f"URL creation unavailable: {exc}")
            raise
        finally:
            duration = time.perf_counter() - start_time
            URL_CREATION_DURATION.observe(duration)
            URL_CREATION_REQUESTS_TOTAL.labels(status=status).inc()
            self._metrics.operation_count += 1
            self._metrics.total_duration += duration

    async def resolve(self, code: str) -> str:
        """Return the target URL for ``code`` and record a click.

        Raises:
            UrlNotFoundError: Unknown, deactivated or expired code
        """
        start_time = time.perf_counter()

        target_url = await self._cache.get(code)
        if target_url is not None:
            self._metrics.cache_hits += 1
            cache_status = CacheStatus.HIT
        else:
            self._metrics.cache_misses += 1
            cache_status = CacheStatus.MISS
            try:
                entry = await self._registry.get_entry(code)
            except UrlNotFoundError:
                URL_LOOKUP_REQUESTS_TOTAL.labels(status=RequestStatus.NOT_FOUND, cache_hit=cache_status).inc()
                self._logger.debug(f"No active URL for code {code}")
                raise
            target_url = entry.original_url
            await self._cache.set(code, target_url, self._cache_ttl_for(entry))

        self._track_click(code)

        URL_LOOKUP_DURATION.observe(time.perf_counter() - start_time)
        URL_LOOKUP_REQUESTS_TOTAL.labels(status=RequestStatus.SUCCESS, cache_hit=cache_status).inc()
        CACHE_HIT_RATE.set(self._metrics.cache_hit_rate)
        return target_url

    async def add_alias(self, code: str, custom_code: str, owner: str) -> tuple[ShortURL, CustomAlias]:
        codec.validate_custom_code(custom_code)
        entry = await self._registry.get_entry(code)
        alias = await self._registry.add_alias(code, custom_code, owner)
        await self._cache.set(custom_code, entry.original_url, self._cache_ttl_for(entry))
        self._logger.info(f"Alias {custom_code} added to {entry.short_code}")
        return entry, alias

    async def deactivate(self, code: str, owner: str) -> list[str]:
        retired = await self._registry.deactivate(code, owner)
        await self._cache.evict(*retired)
        self._logger.info(f"Deactivated {', '.join(retired)}")
        return retired

    async def list_urls(self, owner: str) -> list[OwnedURL]:
        return await self._registry.list_owned(owner)

    async def get_url_statistics(self, code: str) -> URLStatistics:
        """Stored click count plus clicks still buffered on this instance."""
        entry = await self._registry.get_entry(code)
        aliases = await self._registry.aliases_for(entry.id)
        clicks = entry.click_count + self._clicks.pending(entry.short_code, *aliases)
        return URLStatistics(entry=entry, clicks=clicks, aliases=aliases)

    # ========================================================================
    # PRIVATE HELPER METHODS
    # ========================================================================

    async def _store_with_fresh_code(
        self,
        target_url: str,
        owner: str | None,
        expires_at: datetime.datetime | None,
        custom_code: str | None,
    ) -> ShortURL:
        attempts = self._settings.MAX_CODE_ATTEMPTS
        for _ in range(attempts):
            code = codec.encode(await self._allocator.next_value())
            if code in codec.RESERVED_CODES:
                CODE_COLLISIONS_TOTAL.inc()
                self._logger.info(f"Skipping reserved code {code}")
                continue
            try:
                return await self._registry.put(code, target_url, owner, expires_at, alias=custom_code)
            except CodeAlreadyExistsError:
                CODE_COLLISIONS_TOTAL.inc()
                self._logger.warning(f"Generated code {code} already exists, drawing another")

        raise AllocatorUnavailableError(f"Could not mint an unused short code in {attempts} attempts")

    async def _warm_cache(self, entry: ShortURL, custom_code: str | None) -> None:
        ttl = self._cache_ttl_for(entry)
        await self._cache.set(entry.short_code, entry.original_url, ttl)
        if custom_code:
            await self._cache.set(custom_code, entry.original_url, ttl)

    def _cache_ttl_for(self, entry: ShortURL) -> int:
        ttl = self._settings.CACHE_TTL_SECONDS
        if entry.expires_at is not None:
            expires_at = entry.expires_at
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=datetime.UTC)
            ttl = min(ttl, int((expires_at - utcnow()).total_seconds()))
        return ttl

    def _track_click(self, code: str) -> None:
        try:
            self._clicks.record(code)
        except Exception as exc:
            self._logger.error(f"Click tracking error for {code}: {exc}")

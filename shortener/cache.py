"""Redirect cache: optional fast path in front of the code registry.

Keys are ``url:{code}`` and values are the target URL. Target URLs never
change after creation, so concurrent populations of the same key are
harmless (last writer wins). A Redis failure is treated as a miss; the
registry stays the source of truth.
"""

import logging

import redis.asyncio as redis
from prometheus_client import Counter
from redis.exceptions import RedisError

__all__ = ["RedirectCache"]

logger = logging.getLogger(__name__)

REDIS_OPERATIONS_TOTAL = Counter(
    "url_shortener_redis_operations_total",
    "Total Redis operations",
    ["operation"],
)
REDIS_ERRORS_TOTAL = Counter(
    "url_shortener_redis_errors_total",
    "Redis operations that failed and were treated as a cache miss",
)


class RedirectCache:
    KEY_PREFIX = "url"

    def __init__(self, writer: redis.Redis, reader: redis.Redis | None = None, ttl_seconds: int = 3600) -> None:
        self._writer = writer
        self._reader = reader or writer
        self.ttl_seconds = ttl_seconds

    @classmethod
    def key(cls, code: str) -> str:
        return f"{cls.KEY_PREFIX}:{code}"

    async def get(self, code: str) -> str | None:
        try:
            value = await self._reader.get(self.key(code))
        except RedisError as exc:
            REDIS_ERRORS_TOTAL.inc()
            logger.warning(f"Cache read failed for {code}: {exc}")
            return None
        REDIS_OPERATIONS_TOTAL.labels(operation="get").inc()
        return value or None

    async def set(self, code: str, target_url: str, ttl_seconds: int | None = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return
        try:
            await self._writer.set(self.key(code), target_url, ex=ttl)
        except RedisError as exc:
            REDIS_ERRORS_TOTAL.inc()
            logger.warning(f"Cache write failed for {code}: {exc}")
            return
        REDIS_OPERATIONS_TOTAL.labels(operation="set").inc()

    async def evict(self, *codes: str) -> None:
        if not codes:
            return
        try:
            await self._writer.delete(*(self.key(code) for code in codes))
        except RedisError as exc:
            REDIS_ERRORS_TOTAL.inc()
            logger.warning(f"Cache eviction failed for {', '.join(codes)}: {exc}")
            return
        REDIS_OPERATIONS_TOTAL.labels(operation="delete").inc()

    async def ping(self) -> bool:
        try:
            return bool(await self._writer.ping())
        except RedisError:
            return False

"""Redis client management for the URL shortener.

Flow Diagram — Redis Operations
=============================
::
    ┌─────────────┐
    │ get_redis()  │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Check global │
    │ client var   │
    └──────┬──────┘
    EXISTS?  │
    ┌─────┴─────┐
    │ NO         │ YES
    ▼            ▼
┌─────────┐  ┌─────────┐
│ Create  │  │ Return  │
│ Redis   │  │ existing│
│ client  │  │ client  │
└─────────┘  └─────────┘

Key Behaviours
===============
- Clients are created lazily on first access and reused.
- The write client points at the primary; the read client at the replica,
  falling back to the primary when no replica is configured.
- UTF-8 encoding with decode_responses for string operations.
"""

import redis.asyncio as redis

from shortener.config import get_settings

__all__ = ["close_redis", "get_redis", "get_redis_read"]

settings = get_settings()

# Write client: cache population, evictions, Redis counter backend.
redis_client: redis.Redis | None = None

# Read-only client: GET lookups in the redirect hot path.
redis_read_client: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global redis_client
    if redis_client is None:
        redis_client = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
        )
    return redis_client


async def get_redis_read() -> redis.Redis:
    global redis_read_client
    if redis_read_client is None:
        replica_url = settings.REDIS_REPLICA_URL or settings.REDIS_URL
        redis_read_client = redis.from_url(
            replica_url,
            encoding="utf-8",
            decode_responses=True,
        )
    return redis_read_client


async def close_redis() -> None:
    global redis_client, redis_read_client
    if redis_client is not None:
        await redis_client.aclose()
        redis_client = None
    if redis_read_client is not None:
        await redis_read_client.aclose()
        redis_read_client = None

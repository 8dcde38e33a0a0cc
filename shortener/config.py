"""Configuration management for the URL shortener application.

This module provides centralized configuration management using Pydantic BaseSettings
with environment variable support and caching for performance.

Flow Diagram — get_settings()
=============================
::
    ┌─────────────┐
    │  Call get_  │
    │  settings() │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Check cache  │
    │ (lru_cache)  │
    └──────┬──────┘
    HIT?  │
    ┌─────┴─────┐
    │ NO         │ YES
    ▼            ▼
┌─────────┐  ┌─────────┐
│ Create  │  │ Return  │
│ Settings│  │ cached  │
│ instance│  │ value   │
└─────────┘  └─────────┘

How to Use
===========
**Step 1 — Import**::
    from shortener.config import get_settings

**Step 2 — Get settings**::
    settings = get_settings()
    range_size = settings.ID_RANGE_SIZE

Key Behaviours
===============
- Settings are cached after first access for performance.
- Environment variables override defaults automatically.
- The refill threshold must fit inside one range, otherwise a freshly
  promoted range would immediately ask for another one.

Classes:
    Settings:  Pydantic model for all configuration values.

"""

__all__ = ["CounterBackend", "RefillMode", "Settings", "get_settings"]

from enum import StrEnum
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CounterBackend(StrEnum):
    DATABASE = "database"
    REDIS = "redis"
    KEYGEN = "keygen"


class RefillMode(StrEnum):
    SYNC = "sync"
    BACKGROUND = "background"


class Settings(BaseSettings):
    APP_NAME: str = "url-shortener"
    APP_ENV: str = "development"
    BASE_URL: str = "http://localhost:8080"

    # PostgreSQL
    DATABASE_URL: str = "postgresql+asyncpg://urlshortener:urlshortener@db:5432/urlshortener"
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 10

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"
    REDIS_REPLICA_URL: str | None = None

    # Global counter store
    COUNTER_BACKEND: CounterBackend = CounterBackend.DATABASE
    ID_ALLOCATOR_KEY: str = "id_allocator:url"
    KEYGEN_SERVICE_URL: str = "http://keygen:8010"
    KEYGEN_TIMEOUT_SECONDS: float = 2.0

    # Range allocator
    INSTANCE_ID: str | None = None
    ID_RANGE_SIZE: int = 1000
    ID_REFILL_THRESHOLD: int = 100
    ID_REFILL_MODE: RefillMode = RefillMode.SYNC
    ID_ALLOCATION_TIMEOUT_SECONDS: float = 5.0
    ID_ALLOCATOR_REQUIRED_AT_STARTUP: bool = True
    MAX_CODE_ATTEMPTS: int = 5

    # Redirect cache
    CACHE_TTL_SECONDS: int = 3600

    # Click buffering
    CLICK_FLUSH_INTERVAL_SECONDS: float = 5.0
    CLICK_FLUSH_THRESHOLD: int = 100

    # Expired URL cleanup
    EXPIRY_SWEEP_INTERVAL_SECONDS: float = 300.0

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    @model_validator(mode="after")
    def _check_range_policy(self) -> "Settings":
        if self.ID_RANGE_SIZE <= 0:
            raise ValueError("ID_RANGE_SIZE must be positive")
        if not 1 <= self.ID_REFILL_THRESHOLD <= self.ID_RANGE_SIZE:
            raise ValueError("ID_REFILL_THRESHOLD must be between 1 and ID_RANGE_SIZE")
        return self


@lru_cache()
def get_settings() -> Settings:
    return Settings()

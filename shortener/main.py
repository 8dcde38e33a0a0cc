"""FastAPI application entry point for the URL shortener service.

Application Lifecycle Diagram
===========================
::
    ┌──────────────────┐
    │ uvicorn startup  │
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ init_db()        │  create tables
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ ServiceManager   │  cache, counter store,
    │ .initialize()    │  allocator, workers
    └────────┬─────────┘
             ▼
    ┌──────────────────┐   failure + ID_ALLOCATOR_REQUIRED_AT_STARTUP
    │ allocator.start()│ ─────────────────────────────────────────▶ abort
    └────────┬─────────┘   failure otherwise: log critical, serve
             ▼              redirects, creation answers 503
    ┌──────────────────┐
    │ click flusher +  │
    │ expiry sweeper   │
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ Serve HTTP       │
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ shutdown:        │  flush clicks, expire ranges,
    │ cleanup()        │  close DB and Redis
    └──────────────────┘

How to Use
===========
**Run with uvicorn**::
    uvicorn shortener.main:app --host 0.0.0.0 --port 8000

**Shorten a URL**::
    curl -X POST http://localhost:8000/api/shorten \
         -H "Content-Type: application/json" \
         -d '{"url": "https://example.com", "customCode": "my-link"}'

Prometheus metrics are exposed at /metrics.
"""

__all__ = ["app"]

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from shortener.config import get_settings
from shortener.database import close_db, init_db
from shortener.dependencies import _service_manager
from shortener.exceptions import AllocatorUnavailableError
from shortener.redis import close_redis
from shortener.routes import router

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    await init_db()
    await _service_manager.initialize()
    try:
        await _service_manager.allocator.start()
    except AllocatorUnavailableError as exc:
        if settings.ID_ALLOCATOR_REQUIRED_AT_STARTUP:
            await _service_manager.cleanup()
            await close_db()
            await close_redis()
            raise
        _service_manager.logger.critical(
            f"Starting without an ID range ({exc}); URL creation will fail until the counter store recovers"
        )
    _service_manager.start_workers()
    yield
    # Shutdown
    await _service_manager.cleanup()
    await close_db()
    await close_redis()


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="URL shortener with range-based short code allocation",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=False,
    should_respect_env_var=False,
).instrument(app).expose(app)

app.include_router(router)

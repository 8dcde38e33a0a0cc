"""Standalone key generation service exposing the global counter over HTTP.

Instances configured with ``COUNTER_BACKEND=keygen`` reserve their ranges here
instead of touching the counter table directly.

::
    POST /allocate {"size": 1000}  ──▶  {"start": 4000, "end": 4999}
    GET  /health                   ──▶  {"status": "healthy", "database": "healthy"}

Run with::
    uvicorn shortener.keygen:app --port 8010
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from shortener.config import get_settings
from shortener.counter_store import DatabaseCounterStore
from shortener.database import async_session, close_db, init_db
from shortener.enums import HealthStatus
from shortener.exceptions import CounterStoreUnavailableError
from shortener.schemas import AllocateRequest, AllocateResponse

__all__ = ["app"]

settings = get_settings()


class KeygenHealthResponse(BaseModel):
    status: HealthStatus
    database: HealthStatus


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    await init_db()
    store = DatabaseCounterStore(async_session, range_size=settings.ID_RANGE_SIZE)
    await store.initialize()
    app.state.counter_store = store
    yield
    await close_db()


app = FastAPI(title="keygen-service", version="1.0.0", lifespan=lifespan)


@app.get("/health", response_model=KeygenHealthResponse)
async def health(request: Request) -> KeygenHealthResponse:
    db_status = HealthStatus.HEALTHY
    try:
        await request.app.state.counter_store.initialize()
    except CounterStoreUnavailableError:
        db_status = HealthStatus.UNHEALTHY
    return KeygenHealthResponse(status=db_status, database=db_status)


@app.post("/allocate", response_model=AllocateResponse)
async def allocate(req: AllocateRequest, request: Request) -> AllocateResponse:
    if req.size <= 0:
        raise HTTPException(status_code=400, detail="size must be > 0")

    try:
        start = await request.app.state.counter_store.allocate_range(req.size)
    except CounterStoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail="key allocation backend unavailable") from exc
    return AllocateResponse(start=start, end=start + req.size - 1)

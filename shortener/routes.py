"""FastAPI route definitions for the URL shortener REST API.

API Endpoint Overview
=====================
::
    GET    /health
        └─ HealthResponse (200)

    POST   /api/shorten
        ├─ ShortenRequest (request body)
        └─ ShortenResponse (201) or 409/422/503

    GET    /api/stats/:code
        └─ URLStats (200) or 404

    GET    /api/users/me/urls                 (X-Owner-Id required)
        └─ list[OwnedURLResponse] (200) or 401

    PUT    /api/urls/:code/alias              (X-Owner-Id required)
        ├─ AliasRequest (request body)
        └─ AliasResponse (200) or 401/403/404/409/422

    DELETE /api/urls/:code                    (X-Owner-Id required)
        └─ 204 or 401/403/404

    GET    /:code
        └─ 301 Redirect or 404

Key Behaviours
===============
- Domain errors raised by the service layer are translated to HTTP status
  codes here and nowhere else.
- Redirects are permanent (301).
- The catch-all redirect route is registered last so it never shadows /api.
"""

from fastapi import APIRouter, Depends, HTTPException, Response
from fastapi.responses import RedirectResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from shortener.dependencies import (
    RequestContext,
    ServiceManager,
    get_current_owner,
    get_request_context,
    get_service_manager,
    get_url_service,
    require_owner,
)
from shortener.enums import HealthStatus
from shortener.exceptions import (
    AllocatorUnavailableError,
    ConflictError,
    InvalidInputError,
    NotAuthorizedError,
    UrlNotFoundError,
)
from shortener.schemas import (
    AliasRequest,
    AliasResponse,
    HealthResponse,
    OwnedURLResponse,
    ShortenRequest,
    ShortenResponse,
    URLStats,
)
from shortener.url_service import URLShorteningService

__all__ = ["router"]

router = APIRouter()


def _short_url(ctx: RequestContext, code: str) -> str:
    return f"{ctx.settings.BASE_URL.rstrip('/')}/{code}"


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(
    ctx: RequestContext = Depends(get_request_context),
    manager: ServiceManager = Depends(get_service_manager),
) -> HealthResponse:
    db_status = HealthStatus.HEALTHY
    try:
        await ctx.database.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        ctx.logger.error(f"Database health check failed: {e}")
        db_status = HealthStatus.UNHEALTHY

    cache_status = HealthStatus.HEALTHY if await ctx.cache.ping() else HealthStatus.UNHEALTHY
    allocator_status = HealthStatus.HEALTHY if manager.allocator.ready else HealthStatus.UNHEALTHY

    status = (
        HealthStatus.HEALTHY
        if all(s is HealthStatus.HEALTHY for s in (db_status, cache_status, allocator_status))
        else HealthStatus.UNHEALTHY
    )
    if status is not HealthStatus.HEALTHY:
        ctx.logger.warning(
            f"Health check degraded: database={db_status} cache={cache_status} allocator={allocator_status}"
        )
    return HealthResponse(
        status=status,
        database=db_status,
        cache=cache_status,
        allocator=allocator_status,
        allocator_info=manager.allocator.snapshot(),
    )


@router.post("/api/shorten", response_model=ShortenResponse, status_code=201, tags=["urls"])
async def shorten_url(
    payload: ShortenRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: URLShorteningService = Depends(get_url_service),
    owner: str | None = Depends(get_current_owner),
) -> ShortenResponse:
    ctx.add_tag("url_creation")
    try:
        result = await service.create_short_url(
            payload.url, custom_code=payload.custom_code, owner=owner, expires_at=payload.expires_at
        )
    except InvalidInputError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except AllocatorUnavailableError as exc:
        raise HTTPException(status_code=503, detail="Short code generation is temporarily unavailable") from exc

    entry = result.entry
    ctx.logger.info(f"URL shortened: {entry.short_code} in {ctx.get_duration():.1f}ms")
    return ShortenResponse(
        short_code=entry.short_code,
        custom_code=result.custom_code,
        short_url=_short_url(ctx, result.custom_code or entry.short_code),
        original_url=entry.original_url,
        created_at=entry.created_at,
        expires_at=entry.expires_at,
    )


@router.get("/api/stats/{short_code}", response_model=URLStats, tags=["urls"])
async def get_stats(
    short_code: str,
    ctx: RequestContext = Depends(get_request_context),
    service: URLShorteningService = Depends(get_url_service),
) -> URLStats:
    try:
        stats = await service.get_url_statistics(short_code)
    except UrlNotFoundError as exc:
        ctx.logger.warning(f"Stats not found for short code: {short_code}")
        raise HTTPException(status_code=404, detail="Short URL not found") from exc

    entry = stats.entry
    return URLStats(
        short_code=entry.short_code,
        original_url=entry.original_url,
        short_url=_short_url(ctx, entry.short_code),
        clicks=stats.clicks,
        created_at=entry.created_at,
        expires_at=entry.expires_at,
        custom_aliases=stats.aliases,
    )


@router.get("/api/users/me/urls", response_model=list[OwnedURLResponse], tags=["users"])
async def list_my_urls(
    ctx: RequestContext = Depends(get_request_context),
    service: URLShorteningService = Depends(get_url_service),
    owner: str = Depends(require_owner),
) -> list[OwnedURLResponse]:
    owned = await service.list_urls(owner)
    return [
        OwnedURLResponse(
            short_code=item.entry.short_code,
            original_url=item.entry.original_url,
            short_url=_short_url(ctx, item.entry.short_code),
            clicks=item.entry.click_count + ctx.clicks.pending(item.entry.short_code, *item.aliases),
            created_at=item.entry.created_at,
            expires_at=item.entry.expires_at,
            is_active=item.entry.is_active,
            custom_aliases=item.aliases,
        )
        for item in owned
    ]


@router.put("/api/urls/{short_code}/alias", response_model=AliasResponse, tags=["urls"])
async def add_alias(
    short_code: str,
    payload: AliasRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: URLShorteningService = Depends(get_url_service),
    owner: str = Depends(require_owner),
) -> AliasResponse:
    try:
        entry, alias = await service.add_alias(short_code, payload.custom_code, owner)
    except InvalidInputError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except UrlNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Short URL not found") from exc
    except NotAuthorizedError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    return AliasResponse(
        short_code=entry.short_code,
        custom_code=alias.custom_code,
        custom_url=_short_url(ctx, alias.custom_code),
        created_at=alias.created_at,
    )


@router.delete("/api/urls/{short_code}", status_code=204, tags=["urls"])
async def deactivate_url(
    short_code: str,
    service: URLShorteningService = Depends(get_url_service),
    owner: str = Depends(require_owner),
) -> Response:
    try:
        await service.deactivate(short_code, owner)
    except UrlNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Short URL not found") from exc
    except NotAuthorizedError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    return Response(status_code=204)


@router.get("/{short_code}", tags=["redirect"])
async def redirect_to_url(
    short_code: str,
    ctx: RequestContext = Depends(get_request_context),
    service: URLShorteningService = Depends(get_url_service),
) -> RedirectResponse:
    ctx.add_tag("redirect")
    try:
        target_url = await service.resolve(short_code)
    except UrlNotFoundError as exc:
        ctx.logger.info(f"Redirect failed - short code not found: {short_code}")
        raise HTTPException(status_code=404, detail="Short URL not found") from exc

    return RedirectResponse(url=target_url, status_code=301)

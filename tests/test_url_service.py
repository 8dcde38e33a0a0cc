"""Unit tests for the URL shortening service.

The service runs against a real sqlite registry, the in-memory Redis double and
an in-memory counter store, so every path through minting and resolution is
exercised without external services.
"""

import datetime
from unittest.mock import MagicMock, Mock

import pytest

from shortener.allocator import RangeAllocator
from shortener.cache import RedirectCache
from shortener.clicks import ClickTracker
from shortener.codec import decode, encode
from shortener.exceptions import (
    AliasTakenError,
    AllocatorUnavailableError,
    InvalidInputError,
    NotAuthorizedError,
    UrlNotFoundError,
)
from shortener.models import utcnow
from shortener.registry import CodeRegistry
from shortener.url_service import PerformanceMetrics, URLShorteningService

# ============================================================================
# TEST FIXTURES AND UTILITIES
# ============================================================================


@pytest.fixture
def mock_logger() -> MagicMock:
    return MagicMock()


@pytest.fixture
def cache(fake_redis) -> RedirectCache:
    return RedirectCache(fake_redis, ttl_seconds=600)


@pytest.fixture
def allocator(memory_store) -> RangeAllocator:
    return RangeAllocator(memory_store, range_size=100, threshold=10)


@pytest.fixture
def clicks(session_factory) -> ClickTracker:
    return ClickTracker(session_factory)


@pytest.fixture
def url_service(db_session, cache, allocator, clicks, mock_logger, settings) -> URLShorteningService:
    ctx = Mock()
    ctx.database = db_session
    ctx.cache = cache
    ctx.allocator = allocator
    ctx.clicks = clicks
    ctx.logger = mock_logger
    ctx.settings = settings
    return URLShorteningService.from_context(ctx)


# ============================================================================
# CREATION
# ============================================================================


@pytest.mark.asyncio
async def test_create_mints_sequential_codes(url_service, fake_redis):
    first = await url_service.create_short_url("https://example.com/a")
    second = await url_service.create_short_url("https://example.com/b")

    assert first.entry.short_code == "0"
    assert second.entry.short_code == "1"
    assert first.custom_code is None
    assert fake_redis.store["url:0"] == "https://example.com/a"


@pytest.mark.asyncio
async def test_create_with_alias_warms_both_keys(url_service, fake_redis):
    result = await url_service.create_short_url("https://example.com", custom_code="my-link", owner="alice")

    assert result.custom_code == "my-link"
    assert result.entry.owner_id == "alice"
    assert fake_redis.store["url:my-link"] == "https://example.com"
    assert fake_redis.store[f"url:{result.entry.short_code}"] == "https://example.com"


@pytest.mark.asyncio
async def test_invalid_input_never_touches_allocator(url_service, memory_store):
    with pytest.raises(InvalidInputError):
        await url_service.create_short_url("not a url")
    with pytest.raises(InvalidInputError):
        await url_service.create_short_url("https://example.com", custom_code="x")
    with pytest.raises(InvalidInputError):
        await url_service.create_short_url("https://example.com", custom_code="metrics")

    assert memory_store.calls == 0


@pytest.mark.asyncio
async def test_taken_alias_rejected_before_allocation(url_service, db_session, memory_store):
    await CodeRegistry(db_session).put("zzz", "https://example.com", alias="promo")

    with pytest.raises(AliasTakenError):
        await url_service.create_short_url("https://other.example.com", custom_code="promo")

    assert memory_store.calls == 0


@pytest.mark.asyncio
async def test_existing_code_is_skipped(url_service, db_session, mock_logger):
    await CodeRegistry(db_session).put("0", "https://squatter.example.com", alias="squat")

    result = await url_service.create_short_url("https://example.com")

    assert result.entry.short_code == "1"
    mock_logger.warning.assert_called()


@pytest.mark.asyncio
async def test_reserved_code_is_skipped(url_service, memory_store):
    memory_store.value = decode("api")

    result = await url_service.create_short_url("https://example.com")

    assert result.entry.short_code == encode(decode("api") + 1)


@pytest.mark.asyncio
async def test_unavailable_allocator(url_service, memory_store, db_session):
    await CodeRegistry(db_session).put("old", "https://old.example.com")
    memory_store.fail = True

    with pytest.raises(AllocatorUnavailableError):
        await url_service.create_short_url("https://example.com")

    assert await url_service.resolve("old") == "https://old.example.com"


@pytest.mark.asyncio
async def test_gives_up_after_repeated_collisions(url_service, db_session, settings):
    registry = CodeRegistry(db_session)
    for number in range(settings.MAX_CODE_ATTEMPTS):
        await registry.put(encode(number), "https://squatter.example.com")

    with pytest.raises(AllocatorUnavailableError):
        await url_service.create_short_url("https://example.com")


# ============================================================================
# RESOLUTION
# ============================================================================


@pytest.mark.asyncio
async def test_resolve_prefers_cache(url_service, cache, clicks):
    await cache.set("cached", "https://cached.example.com")

    assert await url_service.resolve("cached") == "https://cached.example.com"
    assert clicks.pending("cached") == 1


@pytest.mark.asyncio
async def test_resolve_falls_back_to_registry(url_service, cache, fake_redis):
    result = await url_service.create_short_url("https://example.com", custom_code="promo")
    code = result.entry.short_code
    await cache.evict(code, "promo")

    assert await url_service.resolve(code) == "https://example.com"
    assert await url_service.resolve("promo") == "https://example.com"
    assert fake_redis.store[f"url:{code}"] == "https://example.com"
    assert fake_redis.store["url:promo"] == "https://example.com"


@pytest.mark.asyncio
async def test_resolve_survives_redis_outage(url_service, fake_redis):
    result = await url_service.create_short_url("https://example.com")
    fake_redis.fail = True

    assert await url_service.resolve(result.entry.short_code) == "https://example.com"


@pytest.mark.asyncio
async def test_resolve_unknown(url_service):
    with pytest.raises(UrlNotFoundError):
        await url_service.resolve("missing")


@pytest.mark.asyncio
async def test_cache_ttl_bounded_by_expiry(url_service, fake_redis):
    expires_at = utcnow() + datetime.timedelta(seconds=90)

    result = await url_service.create_short_url("https://example.com", expires_at=expires_at)

    assert 0 < fake_redis.ttls[f"url:{result.entry.short_code}"] <= 90


@pytest.mark.asyncio
async def test_click_tracking_failure_does_not_break_redirect(url_service, clicks, mock_logger):
    result = await url_service.create_short_url("https://example.com")
    clicks.record = MagicMock(side_effect=RuntimeError("boom"))

    assert await url_service.resolve(result.entry.short_code) == "https://example.com"
    mock_logger.error.assert_called()


# ============================================================================
# OWNER OPERATIONS AND STATISTICS
# ============================================================================


@pytest.mark.asyncio
async def test_add_alias_and_deactivate(url_service, fake_redis):
    result = await url_service.create_short_url("https://example.com", owner="alice")
    code = result.entry.short_code

    entry, alias = await url_service.add_alias(code, "second", "alice")
    assert entry.short_code == code
    assert alias.custom_code == "second"
    assert await url_service.resolve("second") == "https://example.com"

    with pytest.raises(NotAuthorizedError):
        await url_service.deactivate(code, "bob")

    assert await url_service.deactivate(code, "alice") == [code, "second"]
    assert f"url:{code}" not in fake_redis.store
    assert "url:second" not in fake_redis.store
    with pytest.raises(UrlNotFoundError):
        await url_service.resolve("second")


@pytest.mark.asyncio
async def test_statistics_include_buffered_clicks(url_service, clicks):
    result = await url_service.create_short_url("https://example.com", custom_code="promo")
    code = result.entry.short_code
    await url_service.resolve(code)
    await url_service.resolve("promo")
    await clicks.flush()
    await url_service.resolve("promo")

    stats = await url_service.get_url_statistics("promo")

    assert stats.entry.short_code == code
    assert stats.aliases == ["promo"]
    assert stats.clicks == 3


@pytest.mark.asyncio
async def test_list_urls(url_service):
    await url_service.create_short_url("https://example.com/1", owner="alice")
    await url_service.create_short_url("https://example.com/2", owner="bob")

    owned = await url_service.list_urls("alice")

    assert [item.entry.original_url for item in owned] == ["https://example.com/1"]


def test_performance_metrics():
    metrics = PerformanceMetrics(operation_count=4, total_duration=2.0, cache_hits=3, cache_misses=1)
    assert metrics.average_duration == 0.5
    assert metrics.cache_hit_rate == 75.0
    assert PerformanceMetrics().cache_hit_rate == 0.0

import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy.exc import OperationalError

from catalog_sync.cache import (
    ResponseCache, _stats, build_key, get_cache_stats,
)


@pytest.fixture(autouse=True)
def clear_stats():
    _stats.update(hits=0, misses=0)
    yield
    _stats.update(hits=0, misses=0)


def test_build_key_deterministic():
    k1 = build_key("items", "US", "B08N5WRWNW", "offers.price")
    k2 = build_key("items", "US", "B08N5WRWNW", "offers.price")
    assert k1 == k2


def test_build_key_prefix():
    k = build_key("test")
    assert k.startswith("cat:v1:")


def test_build_key_different_inputs():
    k1 = build_key("items", "US", "B08N5WRWNW")
    k2 = build_key("items", "DE", "B08N5WRWNW")
    assert k1 != k2


@pytest.mark.asyncio
async def test_entry_readable_until_deadline_without_purge(db, clock):
    cache = ResponseCache(db, clock)
    await cache.set("k", b"payload", 60, external_id="B08N5WRWNW", api_endpoint="items")

    clock.advance(seconds=59)
    entry = await cache.get("k")
    assert entry is not None
    assert entry.response_data == b"payload"

    clock.advance(seconds=1)
    assert await cache.get("k") is None


@pytest.mark.asyncio
async def test_hits_bump_access_count(db, clock):
    cache = ResponseCache(db, clock)
    await cache.set("k", b"v", 300, api_endpoint="items")

    clock.advance(seconds=5)
    await cache.get("k")
    entry = await cache.get("k")
    assert entry.access_count == 3
    assert entry.accessed_at == clock.now


@pytest.mark.asyncio
async def test_overwrite_keeps_counter_and_restarts_ttl(db, clock):
    cache = ResponseCache(db, clock)
    await cache.set("k", b"old", 60, api_endpoint="items")
    created = (await cache.get("k")).created_at

    clock.advance(seconds=50)
    await cache.set("k", b"new", 60, api_endpoint="items")

    clock.advance(seconds=30)
    entry = await cache.get("k")
    assert entry.response_data == b"new"
    assert entry.access_count == 4
    assert entry.created_at == created
    assert entry.expires_at == created + timedelta(seconds=110)


@pytest.mark.asyncio
async def test_non_positive_ttl_is_not_stored(db, clock):
    cache = ResponseCache(db, clock)
    await cache.set("k", b"v", 0, api_endpoint="items")
    assert await cache.get("k") is None


@pytest.mark.asyncio
async def test_purge_expired_is_idempotent(db, clock):
    cache = ResponseCache(db, clock)
    await cache.set("short", b"a", 10, api_endpoint="items")
    await cache.set("long", b"b", 100, api_endpoint="items")

    clock.advance(seconds=20)
    assert await cache.purge_expired() == 1
    assert await cache.purge_expired() == 0
    assert (await cache.get("long")).response_data == b"b"


@pytest.mark.asyncio
async def test_clear_and_counts(db, clock):
    cache = ResponseCache(db, clock)
    await cache.set("a", b"a", 10, api_endpoint="items")
    await cache.set("b", b"b", 100, api_endpoint="items")
    clock.advance(seconds=20)

    assert await cache.counts() == {"entries": 2, "expired": 1}
    assert await cache.clear() == 2
    assert await cache.counts() == {"entries": 0, "expired": 0}


@pytest.mark.asyncio
async def test_storage_failure_reads_as_miss():
    db = MagicMock()
    db.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("db down")))
    db.rollback = AsyncMock()

    assert await ResponseCache(db).get("k") is None
    db.rollback.assert_awaited_once()
    stats = await get_cache_stats()
    assert stats["misses"] == 1


@pytest.mark.asyncio
async def test_stats_track_hits_and_misses(db, clock):
    cache = ResponseCache(db, clock)
    await cache.set("k", b"v", 60, api_endpoint="items")
    await cache.get("k")
    await cache.get("missing")

    stats = await get_cache_stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hit_rate"] == 0.5

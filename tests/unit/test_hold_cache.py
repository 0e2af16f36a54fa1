from datetime import date, datetime, timedelta

import pytest
from unittest.mock import AsyncMock
from redis.exceptions import ConnectionError as RedisConnectionError

from seatsync.services.hold_cache import SCHEDULE_KEY, HoldCache, HoldRef

NOW = datetime(2026, 3, 1, 8, 0, 0)
DAY = date(2026, 3, 10)


@pytest.mark.asyncio
async def test_put_hold_mirrors_record_schedule_and_user_index(redis):
    cache = HoldCache(redis)
    ref = HoldRef(1, DAY, "12")
    expires = NOW + timedelta(minutes=15)

    assert await cache.put_hold(ref, "alice", NOW, expires, NOW)

    hold = await cache.get_hold(ref)
    assert hold.user_id == "alice"
    assert hold.expires_at == expires
    assert 0 < await redis.ttl("hold:1:2026-03-10:12") <= 15 * 60
    assert await redis.zscore(SCHEDULE_KEY, ref.member) is not None
    assert await cache.user_hold_refs("alice") == [ref]


@pytest.mark.asyncio
async def test_due_holds_returns_only_lapsed_entries(redis):
    cache = HoldCache(redis)
    early, late = HoldRef(1, DAY, "1"), HoldRef(1, DAY, "2")
    await cache.put_hold(early, "alice", NOW, NOW + timedelta(minutes=1), NOW)
    await cache.put_hold(late, "bob", NOW, NOW + timedelta(minutes=30), NOW)

    assert await cache.due_holds(NOW + timedelta(minutes=5)) == [early]


@pytest.mark.asyncio
async def test_remove_hold_clears_every_trace(redis):
    cache = HoldCache(redis)
    ref = HoldRef(3, DAY, "7")
    await cache.put_hold(ref, "alice", NOW, NOW + timedelta(minutes=15), NOW)

    await cache.remove_hold(ref, "alice")

    assert await cache.get_hold(ref) is None
    assert await redis.zscore(SCHEDULE_KEY, ref.member) is None
    assert await cache.user_hold_refs("alice") == []


@pytest.mark.asyncio
async def test_projection_cache_round_and_invalidation(redis):
    cache = HoldCache(redis, projection_ttl=300)
    generation = await cache.projection_generation(1, DAY)
    assert await cache.put_projection(1, DAY, {"1": {"status": "booked"}}, generation)
    assert await cache.get_projection(1, DAY) == {"1": {"status": "booked"}}
    assert 0 < await redis.ttl("availability:1:2026-03-10") <= 300

    await cache.invalidate_projection(1, [DAY, DAY])
    assert await cache.get_projection(1, DAY) is None
    assert await cache.projection_generation(1, DAY) == "1"


@pytest.mark.asyncio
async def test_projection_built_before_invalidation_is_discarded(redis):
    cache = HoldCache(redis)
    generation = await cache.projection_generation(1, DAY)

    await cache.invalidate_projection(1, [DAY])

    assert not await cache.put_projection(1, DAY, {"1": {"status": "available"}}, generation)
    assert await cache.get_projection(1, DAY) is None


@pytest.mark.asyncio
async def test_user_index_ttl_never_shrinks(redis):
    cache = HoldCache(redis)
    await cache.put_hold(HoldRef(1, DAY, "1"), "alice", NOW, NOW + timedelta(minutes=20), NOW)
    await cache.put_hold(HoldRef(1, DAY, "2"), "alice", NOW, NOW + timedelta(minutes=1), NOW)

    assert await redis.ttl("user_holds:alice") > 19 * 60
    assert len(await cache.user_hold_refs("alice")) == 2


def test_hold_ref_member_parses_back():
    ref = HoldRef(12, DAY, "1A")
    assert HoldRef.parse(ref.member) == ref


@pytest.mark.asyncio
async def test_unreachable_redis_is_a_cache_miss():
    broken = AsyncMock()
    broken.get.side_effect = RedisConnectionError("down")
    cache = HoldCache(broken)
    assert await cache.get_hold(HoldRef(1, DAY, "1")) is None
    assert await cache.get_projection(1, DAY) is None

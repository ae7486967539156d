import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from chorus_upload.core.settings import Settings
from chorus_upload.services.rate_limit import (
    MemoryCounterStore,
    RateLimiter,
    RateLimitSet,
    RateLimitStoreError,
    RateLimitWindow,
    RedisCounterStore,
    build_data_limits,
    build_request_limits,
)
from tests.conftest import FakeClock


def _limits(*windows: tuple[int, float]) -> RateLimitSet:
    return RateLimitSet(
        name="test",
        description="Uploads",
        unit="requests",
        windows=tuple(RateLimitWindow(duration, max_count) for duration, max_count in windows),
    )


@pytest.mark.asyncio
async def test_window_admits_up_to_max_then_denies(clock: FakeClock) -> None:
    limiter = RateLimiter(MemoryCounterStore(), clock=clock)
    limits = _limits((60, 5))

    for _ in range(5):
        assert (await limiter.check(limits, "10.0.0.1")).admitted

    decision = await limiter.check(limits, "10.0.0.1")
    assert decision.admitted is False
    assert decision.window == limits.windows[0]


@pytest.mark.asyncio
async def test_window_recovers_after_duration(clock: FakeClock) -> None:
    limiter = RateLimiter(MemoryCounterStore(), clock=clock)
    limits = _limits((60, 5))

    for _ in range(5):
        await limiter.check(limits, "10.0.0.1")
    assert not (await limiter.check(limits, "10.0.0.1")).admitted

    clock.advance(60)
    assert (await limiter.check(limits, "10.0.0.1")).admitted


@pytest.mark.asyncio
async def test_denied_check_does_not_consume_quota(clock: FakeClock) -> None:
    store = MemoryCounterStore()
    limiter = RateLimiter(store, clock=clock)
    limits = _limits((60, 10), (3600, 3))

    for _ in range(3):
        assert (await limiter.check(limits, "alice")).admitted

    decision = await limiter.check(limits, "alice")
    assert decision.admitted is False
    assert decision.window == limits.windows[1]

    minute, hour = limits.windows
    minute_key = RateLimiter.counter_key(limits, minute, "alice", int(clock.now // 60))
    hour_key = RateLimiter.counter_key(limits, hour, "alice", int(clock.now // 3600))
    assert store.count(minute_key, clock.now) == 3
    assert store.count(hour_key, clock.now) == 3


@pytest.mark.asyncio
async def test_first_failing_window_is_reported(clock: FakeClock) -> None:
    limiter = RateLimiter(MemoryCounterStore(), clock=clock)
    limits = _limits((60, 1), (3600, 1))

    await limiter.check(limits, "alice")
    decision = await limiter.check(limits, "alice")

    assert decision.window == limits.windows[0]


@pytest.mark.asyncio
async def test_partition_keys_are_independent(clock: FakeClock) -> None:
    limiter = RateLimiter(MemoryCounterStore(), clock=clock)
    limits = _limits((60, 1))

    assert (await limiter.check(limits, "10.0.0.1")).admitted
    assert (await limiter.check(limits, "10.0.0.2")).admitted
    assert not (await limiter.check(limits, "10.0.0.1")).admitted


@pytest.mark.asyncio
async def test_weighted_checks_count_fractional_megabytes(clock: FakeClock) -> None:
    limiter = RateLimiter(MemoryCounterStore(), clock=clock)
    limits = _limits((60, 1))

    assert (await limiter.check(limits, "alice", weight=0.6)).admitted
    assert not (await limiter.check(limits, "alice", weight=0.6)).admitted
    assert (await limiter.check(limits, "alice", weight=0.4)).admitted


@pytest.mark.asyncio
async def test_concurrent_checks_cannot_overshoot(clock: FakeClock) -> None:
    limiter = RateLimiter(MemoryCounterStore(), clock=clock)
    limits = _limits((60, 5))

    decisions = await asyncio.gather(*(limiter.check(limits, "alice") for _ in range(20)))

    assert sum(decision.admitted for decision in decisions) == 5


def test_expired_counters_are_cleaned_up() -> None:
    store = MemoryCounterStore()
    asyncio.run(store.try_increment(["a"], [5], [60], 1, now=0.0))

    assert store.cleanup_expired(now=30.0) == 0
    assert store.cleanup_expired(now=60.0) == 1
    assert store.count("a", now=60.0) == 0


def test_denied_decision_describes_window() -> None:
    limits = _limits((60, 5))
    limiter = RateLimiter(MemoryCounterStore(), clock=lambda: 0.0)

    async def _exhaust() -> str:
        for _ in range(5):
            await limiter.check(limits, "ip")
        decision = await limiter.check(limits, "ip")
        return decision.describe(limits)

    assert asyncio.run(_exhaust()) == "Uploads limit reached: 5 requests per minute."


def test_limits_built_from_settings() -> None:
    config = Settings(UPLOAD_REQUESTS_PER_MINUTE=7, UPLOAD_MEGS_PER_WEEK=99)

    request_limits = build_request_limits(config)
    data_limits = build_data_limits(config)

    assert [w.duration_seconds for w in request_limits.windows] == [60, 3600, 86400]
    assert request_limits.windows[0].max_count == 7
    assert [w.label for w in data_limits.windows] == ["minute", "hour", "day", "week"]
    assert data_limits.windows[-1].max_count == 99


@pytest.mark.asyncio
async def test_redis_store_passes_limits_and_ttls_to_script() -> None:
    script = AsyncMock(return_value=0)
    redis_client = MagicMock()
    redis_client.register_script.return_value = script
    store = RedisCounterStore(redis_client)

    result = await store.try_increment(["k1", "k2"], [5, 10], [60, 3600], 1.5, now=0.0)

    assert result is None
    script.assert_awaited_once_with(keys=["k1", "k2"], args=[1.5, 5, 60, 10, 3600])


@pytest.mark.asyncio
async def test_redis_store_reports_failing_window_index() -> None:
    redis_client = MagicMock()
    redis_client.register_script.return_value = AsyncMock(return_value=2)
    store = RedisCounterStore(redis_client)

    assert await store.try_increment(["k1", "k2"], [5, 10], [60, 3600], 1, now=0.0) == 1


@pytest.mark.asyncio
async def test_redis_store_errors_are_typed() -> None:
    redis_client = MagicMock()
    redis_client.register_script.return_value = AsyncMock(side_effect=RedisConnectionError("down"))
    store = RedisCounterStore(redis_client)

    with pytest.raises(RateLimitStoreError):
        await store.try_increment(["k1"], [5], [60], 1, now=0.0)


@pytest.mark.asyncio
async def test_limiter_close_releases_redis_connection() -> None:
    redis_client = MagicMock()
    redis_client.aclose = AsyncMock()
    limiter = RateLimiter(RedisCounterStore(redis_client))

    await limiter.close()

    redis_client.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_memory_store_close_drops_counters(clock: FakeClock) -> None:
    store = MemoryCounterStore()
    limiter = RateLimiter(store, clock=clock)
    limits = _limits((60, 5))
    await limiter.check(limits, "10.0.0.1")

    await limiter.close()

    key = RateLimiter.counter_key(limits, limits.windows[0], "10.0.0.1", int(clock() // 60))
    assert store.count(key, clock()) == 0

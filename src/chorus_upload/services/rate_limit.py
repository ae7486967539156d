# src/chorus_upload/services/rate_limit.py
"""Rolling-window rate limiting for upload admission.

A :class:`RateLimitSet` groups several windows (minute, hour, ...) that must
all admit an event. Each window keeps one counter per partition key and time
bucket, so a window starts from zero again once its duration has elapsed.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from threading import Lock
from typing import Final, Protocol

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from chorus_upload.core.settings import Settings

logger = logging.getLogger(__name__)

WINDOW_SECONDS: Final[dict[str, int]] = {
    "minute": 60,
    "hour": 3_600,
    "day": 86_400,
    "week": 604_800,
}
_SWEEP_INTERVAL_SECONDS: Final[float] = 60.0

# KEYS: one counter per window. ARGV: weight, then (limit, ttl) per window.
_CHECK_AND_INCREMENT: Final[str] = """
local weight = tonumber(ARGV[1])
for i, key in ipairs(KEYS) do
  local current = tonumber(redis.call('GET', key) or '0')
  if current + weight > tonumber(ARGV[i * 2]) then
    return i
  end
end
for i, key in ipairs(KEYS) do
  redis.call('INCRBYFLOAT', key, ARGV[1])
  redis.call('EXPIRE', key, ARGV[i * 2 + 1])
end
return 0
"""


class RateLimitStoreError(RuntimeError):
    """Raised when the shared counter store cannot be reached."""


@dataclass(frozen=True)
class RateLimitWindow:
    """A single quota: at most ``max_count`` units per ``duration_seconds``."""

    duration_seconds: int
    max_count: float

    @property
    def label(self) -> str:
        for name, seconds in WINDOW_SECONDS.items():
            if seconds == self.duration_seconds:
                return name
        return f"{self.duration_seconds} seconds"


@dataclass(frozen=True)
class RateLimitSet:
    """Ordered windows evaluated together for one dimension."""

    name: str
    description: str
    unit: str
    windows: tuple[RateLimitWindow, ...]


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a rate limit check; ``window`` is set when denied."""

    admitted: bool
    window: RateLimitWindow | None = None

    def describe(self, limits: RateLimitSet) -> str:
        """Return a human readable explanation for a denied decision."""
        if self.window is None:
            return ""
        max_count = self.window.max_count
        amount = int(max_count) if float(max_count).is_integer() else max_count
        return (
            f"{limits.description} limit reached: "
            f"{amount} {limits.unit} per {self.window.label}."
        )


class CounterStore(Protocol):
    """Storage for windowed counters with an atomic check-and-increment."""

    async def try_increment(
        self,
        keys: Sequence[str],
        limits: Sequence[float],
        ttls: Sequence[int],
        weight: float,
        now: float,
    ) -> int | None:
        """Increment every key by ``weight`` if all stay within their limits.

        Returns:
            None when admitted (all counters incremented), otherwise the index
            of the first key that would exceed its limit (nothing incremented).
        """
        ...

    async def close(self) -> None:
        """Release any connection held by the store."""
        ...


class MemoryCounterStore:
    """Process-local counters guarded by a lock."""

    def __init__(self) -> None:
        self._counters: dict[str, tuple[float, float]] = {}
        self._lock = Lock()
        self._next_sweep = 0.0

    def _current(self, key: str, now: float) -> float:
        entry = self._counters.get(key)
        if entry is None or entry[1] <= now:
            return 0.0
        return entry[0]

    def cleanup_expired(self, now: float) -> int:
        """Drop counters whose bucket has elapsed and return how many were removed."""
        expired = [key for key, (_, expires_at) in self._counters.items() if expires_at <= now]
        for key in expired:
            del self._counters[key]
        return len(expired)

    async def try_increment(
        self,
        keys: Sequence[str],
        limits: Sequence[float],
        ttls: Sequence[int],
        weight: float,
        now: float,
    ) -> int | None:
        with self._lock:
            if now >= self._next_sweep:
                self.cleanup_expired(now)
                self._next_sweep = now + _SWEEP_INTERVAL_SECONDS

            current = [self._current(key, now) for key in keys]
            for index, (count, limit) in enumerate(zip(current, limits)):
                if count + weight > limit:
                    return index

            for key, count, ttl in zip(keys, current, ttls):
                self._counters[key] = (count + weight, now + ttl)
            return None

    def count(self, key: str, now: float | None = None) -> float:
        """Return the live value of a counter (zero when absent or expired)."""
        with self._lock:
            return self._current(key, time.time() if now is None else now)

    async def close(self) -> None:
        with self._lock:
            self._counters.clear()


class RedisCounterStore:
    """Counters shared between processes through Redis.

    The check and the increments run inside one Lua script, so concurrent
    uploads for the same key cannot both pass a boundary.
    """

    def __init__(self, client: aioredis.Redis) -> None:
        self._redis = client
        self._script = client.register_script(_CHECK_AND_INCREMENT)

    @classmethod
    def from_url(cls, url: str) -> RedisCounterStore:
        return cls(aioredis.Redis.from_url(url))

    async def try_increment(
        self,
        keys: Sequence[str],
        limits: Sequence[float],
        ttls: Sequence[int],
        weight: float,
        now: float,
    ) -> int | None:
        args: list[float | int] = [weight]
        for limit, ttl in zip(limits, ttls):
            args.extend((limit, ttl))
        try:
            result = await self._script(keys=list(keys), args=args)
        except RedisError as exc:
            raise RateLimitStoreError(f"Rate limit store unavailable: {exc}") from exc
        failed = int(result)
        return None if failed == 0 else failed - 1

    async def close(self) -> None:
        await self._redis.aclose()


class RateLimiter:
    """Admit or deny events against rate limit sets."""

    def __init__(
        self,
        store: CounterStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store or MemoryCounterStore()
        self._clock = clock

    async def close(self) -> None:
        await self._store.close()

    @staticmethod
    def counter_key(limits: RateLimitSet, window: RateLimitWindow, partition_key: str, bucket: int) -> str:
        return f"ratelimit:{limits.name}:{window.duration_seconds}:{partition_key}:{bucket}"

    async def check(
        self,
        limits: RateLimitSet,
        partition_key: str,
        weight: float = 1,
    ) -> RateLimitDecision:
        """Count ``weight`` units for ``partition_key`` unless a window is full.

        Windows are evaluated in declared order and the first full window is
        reported. A denied check leaves every counter untouched.
        """
        now = self._clock()
        keys: list[str] = []
        maxes: list[float] = []
        ttls: list[int] = []
        for window in limits.windows:
            bucket = int(now // window.duration_seconds)
            expires_at = (bucket + 1) * window.duration_seconds
            keys.append(self.counter_key(limits, window, partition_key, bucket))
            maxes.append(window.max_count)
            ttls.append(max(1, math.ceil(expires_at - now)))

        failed = await self._store.try_increment(keys, maxes, ttls, weight, now)
        if failed is None:
            return RateLimitDecision(admitted=True)

        window = limits.windows[failed]
        logger.debug(
            "Rate limit %s denied %s: %s window full (%s %s)",
            limits.name,
            partition_key,
            window.label,
            window.max_count,
            limits.unit,
        )
        return RateLimitDecision(admitted=False, window=window)


def _windows(limits: dict[str, float]) -> tuple[RateLimitWindow, ...]:
    return tuple(
        RateLimitWindow(duration_seconds=WINDOW_SECONDS[name], max_count=max_count)
        for name, max_count in limits.items()
    )


def build_request_limits(config: Settings) -> RateLimitSet:
    """Per-IP request count quotas."""
    return RateLimitSet(
        name="ip-requests",
        description="Uploads",
        unit="requests",
        windows=_windows(dict(config.request_limits)),
    )


def build_data_limits(config: Settings) -> RateLimitSet:
    """Per-account data volume quotas in megabytes."""
    return RateLimitSet(
        name="account-megabytes",
        description="Upload size",
        unit="megabytes",
        windows=_windows(config.data_limits),
    )


def build_counter_store(config: Settings) -> CounterStore:
    """Return the shared Redis store when configured, else process-local counters."""
    if config.rate_limit_redis_url:
        logger.info("Using Redis rate limit counters at %s", config.rate_limit_redis_url)
        return RedisCounterStore.from_url(config.rate_limit_redis_url)
    return MemoryCounterStore()

"""Shared counter store abstraction.

The rate limiter and the read-through cache only ever talk to the store
through the narrow interface below: a handful of sorted-set primitives for
sliding windows and plain key-value operations with expiry. Two backends are
provided, an in-memory one for single-process deployments and tests, and a
Redis one for everything else.
"""

from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Any, Callable
import asyncio
import math
import time

from filehub.app.core.logging import get_logger

logger = get_logger(__name__)


# Atomic remove-expired / count / conditional-insert for one sliding window.
# Returns {allowed, count_before_insert, oldest_score_or_empty}.
SLIDING_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local window_start = tonumber(ARGV[1])
    local now = tonumber(ARGV[2])
    local member = ARGV[3]
    local max_requests = tonumber(ARGV[4])
    local ttl = tonumber(ARGV[5])

    redis.call('ZREMRANGEBYSCORE', key, '-inf', window_start)
    local count = redis.call('ZCARD', key)

    if count < max_requests then
        redis.call('ZADD', key, now, member)
        redis.call('EXPIRE', key, ttl)
        return {1, count, ''}
    end

    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    local oldest_score = ''
    if oldest[2] then
        oldest_score = oldest[2]
    end
    return {0, count, oldest_score}
"""


@dataclass
class WindowAdmission:
    """Outcome of an atomic sliding-window admission attempt."""

    allowed: bool
    count: int
    oldest_score: float | None = None


class CounterStore(ABC):
    """Abstract base class for counter store backends."""

    @abstractmethod
    async def zadd(self, key: str, score: float, member: str) -> int:
        """Add a member to a sorted set, returns the number of new members."""

    @abstractmethod
    async def zcard(self, key: str) -> int:
        """Return the number of members of a sorted set."""

    @abstractmethod
    async def zremrangebyscore(self, key: str, min_score: float | str, max_score: float | str) -> int:
        """Remove members with min_score <= score <= max_score (inclusive)."""

    @abstractmethod
    async def zrem(self, key: str, *members: str) -> int:
        """Remove specific members, returns the number removed."""

    @abstractmethod
    async def zrange_with_scores(self, key: str, start: int, stop: int) -> list[tuple[str, float]]:
        """Return (member, score) pairs by ascending score, Redis index semantics."""

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> bool:
        """Set a key's time to live in seconds."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the string value of a key, or None."""

    @abstractmethod
    async def setex(self, key: str, ttl_seconds: int, value: str) -> bool:
        """Set a string value with an expiry."""

    @abstractmethod
    async def set(self, key: str, value: str) -> bool:
        """Set a string value without expiry."""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys, returns the number deleted."""

    @abstractmethod
    async def keys(self, pattern: str) -> list[str]:
        """Return live keys matching a glob-style pattern."""

    @abstractmethod
    async def incr(self, key: str) -> int:
        """Atomically increment an integer value."""

    @abstractmethod
    async def sliding_window_admit(
        self,
        key: str,
        window_start: float,
        now: float,
        member: str,
        max_requests: int,
        ttl_seconds: int,
    ) -> WindowAdmission:
        """Expire, count and conditionally insert as one atomic step."""

    @abstractmethod
    async def ping(self) -> bool:
        """Check connectivity."""

    async def close(self) -> None:
        """Release backend resources."""


def _redis_glob(pattern: str) -> str:
    """Translate a Redis glob to fnmatch syntax.

    Supported: ``*``, ``?``, ``[abc]``, ``[a-z]`` and negated classes
    ``[^a]``. Backslash escapes are not supported.
    """
    return pattern.replace("[^", "[!")


def _parse_bound(value: float | str) -> float:
    # float() already understands "-inf" / "+inf"
    return float(value)


@dataclass
class _ZSet:
    members: dict[str, float] = field(default_factory=dict)

    def ordered(self) -> list[tuple[str, float]]:
        return sorted(self.members.items(), key=lambda item: (item[1], item[0]))


class InMemoryStore(CounterStore):
    """In-memory counter store with TTL support.

    Stores sorted sets and strings in Python dictionaries and expires keys
    lazily on access. Every operation holds a single asyncio lock, so each
    primitive is atomic with respect to other coroutines in the process.

    Memory is bounded two ways:
    - Writes sweep every expired key at most once per ``sweep_interval`` seconds
    - Beyond ``max_entries`` keys the least recently used ones are evicted

    Note: This store is not distributed and data is lost when the
    application restarts.
    """

    DEFAULT_MAX_ENTRIES = 10000
    DEFAULT_SWEEP_INTERVAL = 60.0

    def __init__(
        self,
        clock: Callable[[], float] | None = None,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
    ) -> None:
        self._clock = clock or time.time
        self._zsets: dict[str, _ZSet] = {}
        self._values: dict[str, str] = {}
        self._expires_at: dict[str, float] = {}
        # Key recency for LRU eviction, oldest first
        self._recency: OrderedDict[str, None] = OrderedDict()
        self._max_entries = max_entries
        self._sweep_interval = sweep_interval
        self._last_sweep = self._clock()
        self._lock = asyncio.Lock()

    def _expired(self, key: str) -> bool:
        expires_at = self._expires_at.get(key)
        return expires_at is not None and self._clock() >= expires_at

    def _drop(self, key: str) -> bool:
        existed = key in self._zsets or key in self._values
        self._zsets.pop(key, None)
        self._values.pop(key, None)
        self._expires_at.pop(key, None)
        self._recency.pop(key, None)
        return existed

    def _touch(self, key: str) -> None:
        self._recency[key] = None
        self._recency.move_to_end(key)

    def _sweep_expired(self) -> int:
        now = self._clock()
        self._last_sweep = now
        expired = [key for key, at in self._expires_at.items() if now >= at]
        for key in expired:
            self._drop(key)
        return len(expired)

    def _enforce_lru_limit(self) -> None:
        """Enforce max entries limit using LRU eviction."""
        if len(self._recency) <= self._max_entries:
            return
        self._sweep_expired()
        overflow = len(self._recency) - self._max_entries
        if overflow > 0:
            # Remove the oldest entries, at least 20% of the limit
            for _ in range(max(overflow, int(self._max_entries * 0.2))):
                key, _ = self._recency.popitem(last=False)
                self._drop(key)

    def _written(self, key: str) -> None:
        """Bookkeeping after a write to ``key``."""
        self._touch(key)
        if self._clock() - self._last_sweep >= self._sweep_interval:
            self._sweep_expired()
        self._enforce_lru_limit()

    def _live_zset(self, key: str) -> _ZSet | None:
        if self._expired(key):
            self._drop(key)
            return None
        return self._zsets.get(key)

    def _live_value(self, key: str) -> str | None:
        if self._expired(key):
            self._drop(key)
            return None
        return self._values.get(key)

    def _exists(self, key: str) -> bool:
        if self._expired(key):
            self._drop(key)
            return False
        return key in self._zsets or key in self._values

    def _zremrange(self, zset: _ZSet, low: float, high: float) -> int:
        doomed = [m for m, s in zset.members.items() if low <= s <= high]
        for member in doomed:
            del zset.members[member]
        return len(doomed)

    def _cleanup_empty(self, key: str) -> None:
        zset = self._zsets.get(key)
        if zset is not None and not zset.members:
            self._drop(key)

    async def zadd(self, key: str, score: float, member: str) -> int:
        async with self._lock:
            zset = self._live_zset(key)
            if zset is None:
                if key in self._values:
                    raise TypeError(f"WRONGTYPE key {key} holds a string value")
                zset = self._zsets[key] = _ZSet()
            added = 0 if member in zset.members else 1
            zset.members[member] = float(score)
            self._written(key)
            return added

    async def zcard(self, key: str) -> int:
        async with self._lock:
            zset = self._live_zset(key)
            return len(zset.members) if zset else 0

    async def zremrangebyscore(self, key: str, min_score: float | str, max_score: float | str) -> int:
        async with self._lock:
            zset = self._live_zset(key)
            if zset is None:
                return 0
            removed = self._zremrange(zset, _parse_bound(min_score), _parse_bound(max_score))
            self._cleanup_empty(key)
            return removed

    async def zrem(self, key: str, *members: str) -> int:
        async with self._lock:
            zset = self._live_zset(key)
            if zset is None:
                return 0
            removed = 0
            for member in members:
                if zset.members.pop(member, None) is not None:
                    removed += 1
            self._cleanup_empty(key)
            return removed

    async def zrange_with_scores(self, key: str, start: int, stop: int) -> list[tuple[str, float]]:
        async with self._lock:
            zset = self._live_zset(key)
            if zset is None:
                return []
            ordered = zset.ordered()
            size = len(ordered)
            if start < 0:
                start = max(size + start, 0)
            if stop < 0:
                stop = size + stop
            if start > stop or start >= size:
                return []
            return ordered[start:stop + 1]

    async def expire(self, key: str, seconds: int) -> bool:
        async with self._lock:
            if not self._exists(key):
                return False
            self._expires_at[key] = self._clock() + seconds
            return True

    async def get(self, key: str) -> str | None:
        async with self._lock:
            return self._live_value(key)

    async def setex(self, key: str, ttl_seconds: int, value: str) -> bool:
        async with self._lock:
            self._drop(key)
            self._values[key] = str(value)
            self._expires_at[key] = self._clock() + ttl_seconds
            self._written(key)
            return True

    async def set(self, key: str, value: str) -> bool:
        async with self._lock:
            self._drop(key)
            self._values[key] = str(value)
            self._written(key)
            return True

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            deleted = 0
            for key in keys:
                if self._exists(key) and self._drop(key):
                    deleted += 1
            return deleted

    async def keys(self, pattern: str) -> list[str]:
        async with self._lock:
            candidates = list(self._zsets) + list(self._values)
            glob = _redis_glob(pattern)
            return [k for k in candidates if self._exists(k) and fnmatchcase(k, glob)]

    async def incr(self, key: str) -> int:
        async with self._lock:
            current = self._live_value(key)
            try:
                value = int(current) + 1 if current is not None else 1
            except ValueError as e:
                raise ValueError(f"value at {key} is not an integer") from e
            self._values[key] = str(value)
            self._written(key)
            return value

    async def sliding_window_admit(
        self,
        key: str,
        window_start: float,
        now: float,
        member: str,
        max_requests: int,
        ttl_seconds: int,
    ) -> WindowAdmission:
        async with self._lock:
            zset = self._live_zset(key)
            if zset is not None:
                self._zremrange(zset, -math.inf, window_start)
            count = len(zset.members) if zset else 0

            if count < max_requests:
                if zset is None:
                    zset = self._zsets[key] = _ZSet()
                zset.members[member] = float(now)
                self._expires_at[key] = self._clock() + ttl_seconds
                self._written(key)
                return WindowAdmission(allowed=True, count=count)

            oldest = zset.ordered()[0][1] if zset and zset.members else None
            return WindowAdmission(allowed=False, count=count, oldest_score=oldest)

    async def ping(self) -> bool:
        return True

    async def cleanup_expired(self) -> int:
        """Remove all expired keys.

        Returns:
            Number of keys removed.
        """
        async with self._lock:
            return self._sweep_expired()

    async def clear(self) -> None:
        """Drop every key."""
        async with self._lock:
            self._zsets.clear()
            self._values.clear()
            self._expires_at.clear()
            self._recency.clear()


class RedisStore(CounterStore):
    """Redis-backed counter store.

    Example:
        >>> store = RedisStore("redis://localhost:6379/0")
        >>> await store.setex("key", 300, "value")
    """

    def __init__(
        self,
        redis_url: str | None = None,
        redis_client: Any | None = None,
        connect_timeout: float | None = None,
        command_timeout: float | None = None,
    ) -> None:
        """Initialize the Redis store.

        Args:
            redis_url: Redis connection URL (e.g., "redis://localhost:6379/0")
            redis_client: Optional pre-built redis.asyncio client
            connect_timeout: Socket connect timeout in seconds
            command_timeout: Per-command socket timeout in seconds
        """
        from filehub.app.core.config import settings

        self._redis_url = redis_url or settings.redis_url
        self._redis = redis_client
        self._connect_timeout = connect_timeout or settings.redis_connect_timeout
        self._command_timeout = command_timeout or settings.redis_command_timeout
        self._max_connections = settings.redis_max_connections

    async def _get_client(self) -> Any:
        """Get or create the Redis client connection."""
        if self._redis is None:
            import redis.asyncio as aioredis

            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                socket_connect_timeout=self._connect_timeout,
                socket_timeout=self._command_timeout,
                retry_on_timeout=True,
                max_connections=self._max_connections,
            )
            logger.info("Redis client created")
        return self._redis

    async def zadd(self, key: str, score: float, member: str) -> int:
        client = await self._get_client()
        return await client.zadd(key, {member: score})

    async def zcard(self, key: str) -> int:
        client = await self._get_client()
        return await client.zcard(key)

    async def zremrangebyscore(self, key: str, min_score: float | str, max_score: float | str) -> int:
        client = await self._get_client()
        return await client.zremrangebyscore(key, min_score, max_score)

    async def zrem(self, key: str, *members: str) -> int:
        client = await self._get_client()
        return await client.zrem(key, *members)

    async def zrange_with_scores(self, key: str, start: int, stop: int) -> list[tuple[str, float]]:
        client = await self._get_client()
        pairs = await client.zrange(key, start, stop, withscores=True)
        return [(member, float(score)) for member, score in pairs]

    async def expire(self, key: str, seconds: int) -> bool:
        client = await self._get_client()
        return bool(await client.expire(key, seconds))

    async def get(self, key: str) -> str | None:
        client = await self._get_client()
        return await client.get(key)

    async def setex(self, key: str, ttl_seconds: int, value: str) -> bool:
        client = await self._get_client()
        return bool(await client.setex(key, ttl_seconds, value))

    async def set(self, key: str, value: str) -> bool:
        client = await self._get_client()
        return bool(await client.set(key, value))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        client = await self._get_client()
        return await client.delete(*keys)

    async def keys(self, pattern: str) -> list[str]:
        # SCAN instead of KEYS so a sweep never blocks the server
        client = await self._get_client()
        return [key async for key in client.scan_iter(match=pattern, count=500)]

    async def incr(self, key: str) -> int:
        client = await self._get_client()
        return await client.incr(key)

    async def sliding_window_admit(
        self,
        key: str,
        window_start: float,
        now: float,
        member: str,
        max_requests: int,
        ttl_seconds: int,
    ) -> WindowAdmission:
        client = await self._get_client()
        allowed, count, oldest = await client.eval(
            SLIDING_WINDOW_SCRIPT,
            1,  # Number of keys
            key,  # KEYS[1]
            window_start,  # ARGV[1]
            now,  # ARGV[2]
            member,  # ARGV[3]
            max_requests,  # ARGV[4]
            ttl_seconds,  # ARGV[5]
        )
        return WindowAdmission(
            allowed=bool(int(allowed)),
            count=int(count),
            oldest_score=float(oldest) if oldest not in (None, "", b"") else None,
        )

    async def ping(self) -> bool:
        client = await self._get_client()
        return bool(await client.ping())

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


# Global store instance (singleton pattern)
_store_instance: CounterStore | None = None


def get_store(
    backend: str | None = None,
    redis_url: str | None = None,
    force_new: bool = False,
) -> CounterStore:
    """Get or create the global counter store.

    Args:
        backend: 'memory', 'redis', or None to follow settings.redis_enabled.
        redis_url: Redis connection URL. If not provided, uses settings.redis_url.
        force_new: If True, create a new instance even if one exists.
    """
    global _store_instance

    if _store_instance is not None and not force_new:
        return _store_instance

    from filehub.app.core.config import settings

    if backend == "redis":
        use_redis = True
    elif backend == "memory":
        use_redis = False
    else:
        use_redis = settings.redis_enabled

    if use_redis:
        _store_instance = RedisStore(redis_url or settings.redis_url)
        logger.info("Using Redis counter store")
    else:
        _store_instance = InMemoryStore()
        logger.info("Using in-memory counter store")
    return _store_instance


def reset_store() -> None:
    """Reset the global store instance.

    This is primarily useful for testing.
    """
    global _store_instance
    _store_instance = None


async def is_store_healthy(store: CounterStore | None = None) -> bool:
    """Return True when the counter store answers a ping."""
    store = store or get_store()
    try:
        return await store.ping()
    except Exception as e:
        logger.error(f"Counter store health check failed: {e}")
        return False


async def close_store() -> None:
    """Close the global store, if one was created."""
    global _store_instance

    if _store_instance is None:
        return
    try:
        await _store_instance.close()
        logger.info("Counter store connection closed gracefully")
    except Exception as e:
        logger.error(f"Error closing counter store connection: {e}")
    finally:
        _store_instance = None

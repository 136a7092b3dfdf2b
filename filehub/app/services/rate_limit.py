"""Sliding-window rate limit engine.

Each identifier owns a sorted set ``rate_limit:{identifier}`` whose members
are admitted requests scored by their admission time in milliseconds. The
number of members inside the trailing window decides admission. Members are
unique (timestamp plus a random suffix) so one specific admission can later
be retracted without touching the others.

The baseline check is three separate store calls (expire, count, insert).
They are individually atomic but not transactional, so a burst of concurrent
requests for one identifier can be slightly over-admitted near the limit.
Set ``atomic=True`` (or ``RATE_LIMIT_ATOMIC``) to run the whole sequence as a
single store-side script instead.
"""

import math
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

import redis

from filehub.app.core.config import settings
from filehub.app.core.logging import get_log_context, get_logger
from filehub.app.core.store import CounterStore, get_store

logger = get_logger(__name__)

WINDOW_KEY_PREFIX = "rate_limit:"


def window_key(identifier: str) -> str:
    """Return the sorted-set key holding the window for ``identifier``."""
    return f"{WINDOW_KEY_PREFIX}{identifier}"


def now_ms() -> int:
    return int(time.time() * 1000)


def new_member_id(timestamp_ms: int) -> str:
    """Unique admission token: ``{timestampMillis}-{randomSuffix}``."""
    return f"{timestamp_ms}-{uuid.uuid4().hex[:8]}"


@dataclass
class RateLimitResult:
    """Result of a rate limit check.

    ``reset_at`` is an epoch timestamp in milliseconds. ``member_id`` and
    ``timestamp`` (the admitted score, epoch ms) are only set when an
    admission record was actually written.
    """
    allowed: bool
    remaining: int
    reset_at: int
    member_id: Optional[str] = None
    limit: int = 0
    key: Optional[str] = None
    timestamp: Optional[int] = None

    def retry_after_seconds(self, now: Optional[int] = None) -> int:
        """Whole seconds until ``reset_at``, rounded up."""
        current = now_ms() if now is None else now
        return max(0, math.ceil((self.reset_at - current) / 1000))


class SlidingWindowRateLimiter:
    """Sliding window admission control backed by a shared counter store.

    Example:
        >>> limiter = SlidingWindowRateLimiter(store=InMemoryStore())
        >>> result = await limiter.check("10.0.0.1:/api/logs", 100, 60000)
        >>> result.allowed
        True
    """

    def __init__(
        self,
        store: Optional[CounterStore] = None,
        clock: Optional[Callable[[], int]] = None,
        atomic: Optional[bool] = None,
        fail_closed: Optional[bool] = None,
    ):
        """Initialize the limiter.

        Args:
            store: Counter store; resolved from get_store() on each call when omitted
            clock: Returns the current epoch time in milliseconds
            atomic: Run the window check as one atomic store operation
            fail_closed: Deny instead of allow when the store fails
        """
        self._store = store
        self._clock = clock or now_ms
        self.atomic = settings.rate_limit_atomic if atomic is None else atomic
        self.fail_closed = (
            settings.rate_limit_fail_closed if fail_closed is None else fail_closed
        )

    @property
    def store(self) -> CounterStore:
        return self._store if self._store is not None else get_store()

    def now(self) -> int:
        """Current time in epoch milliseconds, from the limiter's clock."""
        return int(self._clock())

    async def check(
        self,
        identifier: str,
        max_requests: int,
        window_ms: int,
    ) -> RateLimitResult:
        """Check, and on success record, one request for ``identifier``.

        The window is the half-open interval ``(now - window_ms, now]``:
        a member scored exactly ``now - window_ms`` has already expired.
        """
        key = window_key(identifier)
        now = int(self._clock())
        window_start = now - window_ms
        ttl_seconds = math.ceil(window_ms / 1000) + 1

        try:
            if self.atomic:
                return await self._check_atomic(
                    identifier, key, now, window_start, max_requests, window_ms, ttl_seconds
                )

            store = self.store
            await store.zremrangebyscore(key, "-inf", window_start)
            count = await store.zcard(key)

            if count < max_requests:
                member_id = new_member_id(now)
                await store.zadd(key, now, member_id)
                # Safety net so idle windows disappear on their own
                await store.expire(key, ttl_seconds)
                return RateLimitResult(
                    allowed=True,
                    remaining=max_requests - count - 1,
                    reset_at=now + window_ms,
                    member_id=member_id,
                    limit=max_requests,
                    key=key,
                    timestamp=now,
                )

            oldest = await store.zrange_with_scores(key, 0, 0)
            reset_at = int(oldest[0][1]) + window_ms if oldest else now + window_ms
            return self._denied(identifier, key, max_requests, reset_at)

        except redis.ConnectionError as e:
            logger.error(f"Redis connection failed: {e}", extra=get_log_context(identifier=identifier))
            return self._handle_store_failure("connection_error", key, max_requests, now, window_ms)
        except redis.TimeoutError as e:
            logger.warning(f"Redis timeout: {e}", extra=get_log_context(identifier=identifier))
            return self._handle_store_failure("timeout", key, max_requests, now, window_ms)
        except redis.RedisError as e:
            logger.error(f"Redis error: {e}", extra=get_log_context(identifier=identifier))
            return self._handle_store_failure("redis_error", key, max_requests, now, window_ms)
        except Exception as e:
            logger.exception(
                f"Rate limit check error for {identifier}: {e}",
                extra=get_log_context(identifier=identifier),
            )
            return self._handle_store_failure("unexpected", key, max_requests, now, window_ms)

    async def _check_atomic(
        self,
        identifier: str,
        key: str,
        now: int,
        window_start: int,
        max_requests: int,
        window_ms: int,
        ttl_seconds: int,
    ) -> RateLimitResult:
        member_id = new_member_id(now)
        admission = await self.store.sliding_window_admit(
            key, window_start, now, member_id, max_requests, ttl_seconds
        )
        if admission.allowed:
            return RateLimitResult(
                allowed=True,
                remaining=max_requests - admission.count - 1,
                reset_at=now + window_ms,
                member_id=member_id,
                limit=max_requests,
                key=key,
                timestamp=now,
            )

        if admission.oldest_score is not None:
            reset_at = int(admission.oldest_score) + window_ms
        else:
            reset_at = now + window_ms
        return self._denied(identifier, key, max_requests, reset_at)

    def _denied(self, identifier: str, key: str, max_requests: int, reset_at: int) -> RateLimitResult:
        logger.debug(
            "Rate limit exceeded",
            extra=get_log_context(identifier=identifier, limit=max_requests),
        )
        return RateLimitResult(
            allowed=False,
            remaining=0,
            reset_at=reset_at,
            limit=max_requests,
            key=key,
        )

    def _handle_store_failure(
        self,
        error_type: str,
        key: str,
        max_requests: int,
        now: int,
        window_ms: int,
    ) -> RateLimitResult:
        """Handle a store failure with the configured fail-open/fail-closed policy.

        Nothing was written, so no member id is returned and there is
        nothing to roll back.
        """
        if self.fail_closed:
            logger.warning(
                f"Rate limiting fail-closed triggered due to {error_type}. "
                "Request denied."
            )
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=now + window_ms,
                limit=max_requests,
                key=key,
            )

        logger.warning(
            f"Rate limiting fail-open triggered due to {error_type}. "
            "Request allowed without rate limit check."
        )
        return RateLimitResult(
            allowed=True,
            remaining=max_requests,
            reset_at=now + window_ms,
            limit=max_requests,
            key=key,
        )

    async def rollback(self, key: str, member_id: str) -> bool:
        """Retract one admission. Returns True if the member was still present."""
        removed = await self.store.zrem(key, member_id)
        return removed > 0


# Global limiter instance
_rate_limiter: Optional[SlidingWindowRateLimiter] = None


def get_rate_limiter() -> SlidingWindowRateLimiter:
    """Get the global limiter bound to the global counter store."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = SlidingWindowRateLimiter()
    return _rate_limiter


def reset_rate_limiter() -> None:
    """Reset the global limiter (settings changes, tests)."""
    global _rate_limiter
    _rate_limiter = None


async def check_rate_limit(
    identifier: str,
    max_requests: int,
    window_ms: int,
) -> RateLimitResult:
    """Sliding window check for ``identifier`` against the global store."""
    return await get_rate_limiter().check(identifier, max_requests, window_ms)

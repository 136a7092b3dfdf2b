"""Tests for the sliding window rate limit engine."""

import asyncio

import pytest
import redis
from unittest.mock import AsyncMock, MagicMock

from filehub.app.core.store import CounterStore, InMemoryStore, WindowAdmission
from filehub.app.services.rate_limit import (
    RateLimitResult,
    SlidingWindowRateLimiter,
    check_rate_limit,
    get_rate_limiter,
    new_member_id,
    reset_rate_limiter,
    window_key,
)


@pytest.fixture(params=[False, True], ids=["baseline", "atomic"])
def limiter(request, store, clock):
    return SlidingWindowRateLimiter(store=store, clock=clock, atomic=request.param)


class TestSlidingWindow:
    """Admission behaviour, run for both the baseline and the atomic path."""

    @pytest.mark.asyncio
    async def test_admits_up_to_max_then_denies(self, limiter, clock):
        remaining = []
        for t in (0, 100, 200):
            clock.now = t
            result = await limiter.check("u", 3, 1000)
            assert result.allowed is True
            remaining.append(result.remaining)
        assert remaining == [2, 1, 0]

        clock.now = 300
        denied = await limiter.check("u", 3, 1000)
        assert denied.allowed is False
        assert denied.remaining == 0
        assert denied.reset_at == 1000  # oldest (0) + window
        assert denied.member_id is None
        assert denied.timestamp is None

    @pytest.mark.asyncio
    async def test_denied_request_is_not_recorded(self, limiter, store, clock):
        for t in (0, 100, 200, 300, 400):
            clock.now = t
            await limiter.check("u", 3, 1000)

        assert await store.zcard(window_key("u")) == 3

    @pytest.mark.asyncio
    async def test_member_on_window_boundary_has_expired(self, limiter, clock):
        for t in (0, 100, 200):
            clock.now = t
            await limiter.check("u", 3, 1000)

        clock.now = 1000
        result = await limiter.check("u", 3, 1000)
        assert result.allowed is True
        assert result.remaining == 0

    @pytest.mark.asyncio
    async def test_window_slides(self, limiter, clock):
        for t in (0, 100, 200):
            clock.now = t
            await limiter.check("u", 3, 1000)

        clock.now = 999
        assert (await limiter.check("u", 3, 1000)).allowed is False

        clock.now = 1100
        # Members at 0 and 100 are gone, 200 remains
        result = await limiter.check("u", 3, 1000)
        assert result.allowed is True
        assert result.remaining == 1

    @pytest.mark.asyncio
    async def test_allowed_result_carries_admitted_score(self, limiter, store, clock):
        clock.now = 4200
        result = await limiter.check("u", 3, 1000)

        assert result.timestamp == 4200
        assert await store.zrange_with_scores(window_key("u"), 0, -1) == [(result.member_id, 4200.0)]

    @pytest.mark.asyncio
    async def test_reset_at_on_allow(self, limiter, clock):
        clock.now = 5000
        result = await limiter.check("u", 10, 60000)
        assert result.reset_at == 65000
        assert result.limit == 10
        assert result.key == "rate_limit:u"

    @pytest.mark.asyncio
    async def test_identifiers_are_independent(self, limiter):
        for _ in range(2):
            await limiter.check("a", 2, 1000)

        assert (await limiter.check("a", 2, 1000)).allowed is False
        assert (await limiter.check("b", 2, 1000)).allowed is True

    @pytest.mark.asyncio
    async def test_same_millisecond_requests_are_distinct(self, limiter, store):
        results = [await limiter.check("u", 5, 1000) for _ in range(3)]

        assert len({r.member_id for r in results}) == 3
        assert await store.zcard(window_key("u")) == 3

    @pytest.mark.asyncio
    async def test_rollback_frees_a_slot(self, limiter, clock):
        first = await limiter.check("u", 1, 1000)
        assert (await limiter.check("u", 1, 1000)).allowed is False

        assert await limiter.rollback(first.key, first.member_id) is True
        assert (await limiter.check("u", 1, 1000)).allowed is True

    @pytest.mark.asyncio
    async def test_rollback_of_unknown_member(self, limiter):
        await limiter.check("u", 1, 1000)
        assert await limiter.rollback(window_key("u"), "0-deadbeef") is False

    @pytest.mark.asyncio
    async def test_window_key_gets_expiry(self, store, clock):
        store.expire = AsyncMock(wraps=store.expire)
        limiter = SlidingWindowRateLimiter(store=store, clock=clock, atomic=False)

        await limiter.check("u", 3, 1500)

        # ceil(1.5) + 1 seconds
        store.expire.assert_awaited_once_with("rate_limit:u", 3)


class TestHelpers:

    def test_member_id_format(self):
        member = new_member_id(1234)
        prefix, suffix = member.split("-")
        assert prefix == "1234"
        assert len(suffix) == 8

    def test_retry_after_rounds_up(self):
        result = RateLimitResult(allowed=False, remaining=0, reset_at=10_001)
        assert result.retry_after_seconds(now=9_000) == 2
        assert result.retry_after_seconds(now=10_001) == 0
        assert result.retry_after_seconds(now=20_000) == 0


class TestStoreFailure:
    """The limiter never lets a store outage reject traffic by default."""

    @pytest.fixture
    def broken_store(self):
        store = MagicMock(spec=CounterStore)
        error = redis.ConnectionError("Connection refused")
        store.zremrangebyscore = AsyncMock(side_effect=error)
        store.sliding_window_admit = AsyncMock(side_effect=error)
        return store

    @pytest.mark.asyncio
    async def test_fail_open(self, broken_store, clock):
        limiter = SlidingWindowRateLimiter(store=broken_store, clock=clock, fail_closed=False)

        result = await limiter.check("u", 5, 1000)

        assert result.allowed is True
        assert result.remaining == 5
        assert result.member_id is None
        assert result.timestamp is None

    @pytest.mark.asyncio
    async def test_fail_open_atomic(self, broken_store, clock):
        limiter = SlidingWindowRateLimiter(
            store=broken_store, clock=clock, atomic=True, fail_closed=False
        )
        result = await limiter.check("u", 5, 1000)
        assert result.allowed is True
        assert result.member_id is None

    @pytest.mark.asyncio
    async def test_fail_closed(self, broken_store, clock):
        limiter = SlidingWindowRateLimiter(store=broken_store, clock=clock, fail_closed=True)

        result = await limiter.check("u", 5, 1000)

        assert result.allowed is False
        assert result.remaining == 0
        assert result.reset_at == 1000

    @pytest.mark.asyncio
    async def test_timeout_and_unexpected_errors(self, clock):
        store = MagicMock(spec=CounterStore)
        limiter = SlidingWindowRateLimiter(store=store, clock=clock, fail_closed=False)

        store.zremrangebyscore = AsyncMock(side_effect=redis.TimeoutError("slow"))
        assert (await limiter.check("u", 5, 1000)).allowed is True

        store.zremrangebyscore = AsyncMock(side_effect=RuntimeError("boom"))
        assert (await limiter.check("u", 5, 1000)).allowed is True


class TestAtomicMode:

    @pytest.mark.asyncio
    async def test_uses_single_store_call(self, clock):
        store = MagicMock(spec=CounterStore)
        store.sliding_window_admit = AsyncMock(
            return_value=WindowAdmission(allowed=False, count=3, oldest_score=250.0)
        )
        clock.now = 900
        limiter = SlidingWindowRateLimiter(store=store, clock=clock, atomic=True)

        result = await limiter.check("u", 3, 1000)

        assert result.allowed is False
        assert result.reset_at == 1250
        args = store.sliding_window_admit.await_args.args
        assert args[0] == "rate_limit:u"
        assert args[1] == -100  # window start
        assert args[2] == 900
        assert args[4:] == (3, 2)


class TestGlobalLimiter:

    @pytest.mark.asyncio
    async def test_check_rate_limit_uses_global_store(self, memory_store):
        reset_rate_limiter()
        for _ in range(2):
            assert (await check_rate_limit("global", 2, 60000)).allowed is True
        assert (await check_rate_limit("global", 2, 60000)).allowed is False
        assert await memory_store.zcard("rate_limit:global") == 2

    def test_singleton(self):
        assert get_rate_limiter() is get_rate_limiter()
        first = get_rate_limiter()
        reset_rate_limiter()
        assert get_rate_limiter() is not first


class TestMemoryBound:

    @pytest.mark.asyncio
    async def test_expired_windows_are_released(self, clock):
        seconds = [1000.0]
        store = InMemoryStore(clock=lambda: seconds[0])
        limiter = SlidingWindowRateLimiter(store=store, clock=clock, atomic=False)

        for i in range(5000):
            await limiter.check(f"10.0.{i // 256}.{i % 256}:/files/{i}", 10, 1000)
        assert len(store._zsets) == 5000

        seconds[0] += 3600
        clock.advance(3_600_000)
        await limiter.check("10.9.9.9:/files", 10, 1000)

        assert list(store._zsets) == ["rate_limit:10.9.9.9:/files"]


class TestConcurrentBurst:

    @pytest.mark.asyncio
    async def test_atomic_mode_admits_exactly_max(self, store, clock):
        limiter = SlidingWindowRateLimiter(store=store, clock=clock, atomic=True)

        results = await asyncio.gather(*(limiter.check("u", 5, 1000) for _ in range(20)))

        assert sum(r.allowed for r in results) == 5
        assert await store.zcard(window_key("u")) == 5
        assert sorted(r.remaining for r in results if r.allowed) == [0, 1, 2, 3, 4]

"""Tests for the Redis revocation store and rate limiter against fakeredis."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import fakeredis
import pytest
from fakeredis.aioredis import FakeRedis
from gatekeep_auth.errors import StoreUnavailable
from gatekeep_auth.rate_limiter import EndpointClass, RateLimitConfig, RateLimiterProtocol, RateOutcome, TierPolicy
from gatekeep_auth.redis_store import RedisRateLimiter, RedisRevocationStore
from gatekeep_auth.revocation import TokenRevocationStore
from redis.exceptions import ConnectionError as RedisConnectionError


class _BrokenScript:
    async def __call__(self, keys=None, args=None, client=None):
        raise RedisConnectionError("connection refused")


class _BrokenRedis:
    """Client whose every call fails the way an unreachable server does."""

    def register_script(self, script: str) -> _BrokenScript:
        return _BrokenScript()

    async def exists(self, *names: str) -> int:
        raise RedisConnectionError("connection refused")

    async def get(self, name: str) -> str | None:
        raise RedisConnectionError("connection refused")

    async def delete(self, *names: str) -> int:
        raise RedisConnectionError("connection refused")


@pytest.fixture
def client() -> FakeRedis:
    return FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def store(client: FakeRedis) -> RedisRevocationStore:
    return RedisRevocationStore(client, key_prefix="test:")


def _limiter(client, clock, max_requests: int = 3, window: int = 60, **kwargs) -> RedisRateLimiter:
    config = RateLimitConfig(
        tiers={EndpointClass.LOGIN: TierPolicy(max_requests=max_requests, window_seconds=window)},
        **kwargs,
    )
    return RedisRateLimiter(client, config, key_prefix="test:", clock=clock)


class TestRedisRevocationStore:
    def test_protocol_compliance(self, store: RedisRevocationStore) -> None:
        assert isinstance(store, TokenRevocationStore)

    @pytest.mark.asyncio
    async def test_revoke_and_lookup(self, store: RedisRevocationStore, client: FakeRedis) -> None:
        assert await store.is_revoked("jti-1") is False
        assert await store.revoke("jti-1", 60) is True
        assert await store.is_revoked("jti-1") is True
        assert await client.exists("test:revoked:jti:jti-1") == 1

    @pytest.mark.asyncio
    async def test_entry_has_ttl(self, store: RedisRevocationStore, client: FakeRedis) -> None:
        await store.revoke("jti-1", 60)
        assert 0 < await client.pttl("test:revoked:jti:jti-1") <= 60_000

    @pytest.mark.asyncio
    async def test_duplicate_never_shortens(self, store: RedisRevocationStore, client: FakeRedis) -> None:
        await store.revoke("jti-1", 100)
        assert await store.revoke("jti-1", 1) is False
        assert await client.pttl("test:revoked:jti:jti-1") > 50_000

    @pytest.mark.asyncio
    async def test_longer_duplicate_extends(self, store: RedisRevocationStore, client: FakeRedis) -> None:
        await store.revoke("jti-1", 1)
        await store.revoke("jti-1", 100)
        assert await client.pttl("test:revoked:jti:jti-1") > 50_000

    @pytest.mark.asyncio
    async def test_non_positive_ttl_is_noop(self, store: RedisRevocationStore) -> None:
        assert await store.revoke("jti-1", 0) is False
        assert await store.is_revoked("jti-1") is False

    @pytest.mark.asyncio
    async def test_subject_cutoff(self, store: RedisRevocationStore, client: FakeRedis) -> None:
        first = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        later = first + timedelta(minutes=5)

        assert await store.subject_revoked_before("user-1") is None
        await store.revoke_subject("user-1", later, 3600)
        await store.revoke_subject("user-1", first, 3600)
        assert await store.subject_revoked_before("user-1") == later
        assert 0 < await client.pttl("test:revoked:sub:user-1") <= 3_600_000

    @pytest.mark.asyncio
    async def test_unreachable_store_raises(self) -> None:
        broken = RedisRevocationStore(_BrokenRedis())
        with pytest.raises(StoreUnavailable):
            await broken.is_revoked("jti-1")
        with pytest.raises(StoreUnavailable):
            await broken.revoke("jti-1", 60)
        with pytest.raises(StoreUnavailable):
            await broken.subject_revoked_before("user-1")


class TestRedisRateLimiter:
    def test_protocol_compliance(self, client: FakeRedis, clock) -> None:
        assert isinstance(_limiter(client, clock), RateLimiterProtocol)

    @pytest.mark.asyncio
    async def test_limit_then_deny(self, client: FakeRedis, clock) -> None:
        limiter = _limiter(client, clock, max_requests=3, window=60)
        decisions = [await limiter.try_acquire("ip:1.2.3.4", EndpointClass.LOGIN) for _ in range(4)]

        assert [d.outcome for d in decisions] == [RateOutcome.ALLOWED] * 3 + [RateOutcome.DENIED]
        assert [d.remaining for d in decisions[:3]] == [2, 1, 0]
        assert decisions[3].retry_after == 60

    @pytest.mark.asyncio
    async def test_window_slides(self, client: FakeRedis, clock) -> None:
        limiter = _limiter(client, clock, max_requests=2, window=60)
        await limiter.try_acquire("k", EndpointClass.LOGIN)
        clock.advance(30)
        await limiter.try_acquire("k", EndpointClass.LOGIN)
        assert (await limiter.try_acquire("k", EndpointClass.LOGIN)).outcome is RateOutcome.DENIED

        clock.advance(31)
        assert (await limiter.try_acquire("k", EndpointClass.LOGIN)).allowed

    @pytest.mark.asyncio
    async def test_repeated_denials_extend_window(self, client: FakeRedis, clock) -> None:
        limiter = _limiter(client, clock, max_requests=1, window=10)
        assert (await limiter.try_acquire("k", EndpointClass.LOGIN)).allowed
        clock.advance(1)
        first = await limiter.try_acquire("k", EndpointClass.LOGIN)
        clock.advance(1)
        second = await limiter.try_acquire("k", EndpointClass.LOGIN)

        assert first.retry_after == 9
        assert second.retry_after == 18

    @pytest.mark.asyncio
    async def test_keys_and_classes_are_independent(self, client: FakeRedis, clock) -> None:
        limiter = _limiter(client, clock, max_requests=1)
        assert (await limiter.try_acquire("a", EndpointClass.LOGIN)).allowed
        assert (await limiter.try_acquire("b", EndpointClass.LOGIN)).allowed
        assert (await limiter.try_acquire("a", EndpointClass.REGISTER)).allowed
        assert not (await limiter.try_acquire("a", EndpointClass.LOGIN)).allowed

    @pytest.mark.asyncio
    async def test_concurrent_acquires_admit_exactly_limit(self, client: FakeRedis, clock) -> None:
        limit, extra = 5, 7
        limiter = _limiter(client, clock, max_requests=limit)
        decisions = await asyncio.gather(
            *(limiter.try_acquire("ip:9.9.9.9", EndpointClass.LOGIN) for _ in range(limit + extra))
        )
        assert sum(d.allowed for d in decisions) == limit
        assert sum(d.outcome is RateOutcome.DENIED for d in decisions) == extra

    @pytest.mark.asyncio
    async def test_reset(self, client: FakeRedis, clock) -> None:
        limiter = _limiter(client, clock, max_requests=1)
        await limiter.try_acquire("k", EndpointClass.LOGIN)
        await limiter.reset("k", EndpointClass.LOGIN)
        assert (await limiter.try_acquire("k", EndpointClass.LOGIN)).allowed

    @pytest.mark.asyncio
    async def test_unreachable_store_is_unavailable(self, clock) -> None:
        limiter = _limiter(_BrokenRedis(), clock)
        decision = await limiter.try_acquire("k", EndpointClass.LOGIN)
        assert decision.outcome is RateOutcome.UNAVAILABLE
        assert not decision.allowed

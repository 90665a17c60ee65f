"""Redis-backed revocation store and rate limiter.

Every read-modify-write runs as a single Lua script so that concurrent
gateway instances never race on the same key. Timestamps and TTLs are
passed as integer milliseconds because Lua numbers are truncated to
integers in script replies.
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from gatekeep_auth.config import StoreConfig
from gatekeep_auth.errors import StoreUnavailable
from gatekeep_auth.rate_limiter import EndpointClass, RateDecision, RateLimitConfig, bucket_key

logger = logging.getLogger(__name__)

# Create or extend a revocation entry; never shorten it. Returns 1 when created.
_REVOKE_SCRIPT = """
local key = KEYS[1]
local ttl = tonumber(ARGV[2])
local current = redis.call('PTTL', key)
if current == -2 then
  redis.call('SET', key, ARGV[1], 'PX', ttl)
  return 1
end
if current < ttl then
  redis.call('PEXPIRE', key, ttl)
end
return 0
"""

# Keep the latest per-subject cutoff.
_SUBJECT_SCRIPT = """
local key = KEYS[1]
local current = redis.call('GET', key)
if (not current) or tonumber(current) < tonumber(ARGV[1]) then
  redis.call('SET', key, ARGV[1], 'PX', tonumber(ARGV[2]))
  return 1
end
return 0
"""

# Sliding-log acquire with multiplicative backoff. Returns {allowed, remaining, retry_after_ms}.
_ACQUIRE_SCRIPT = """
local hits_key = KEYS[1]
local violations_key = KEYS[2]
local now = tonumber(ARGV[1])
local base_window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]
local factor = tonumber(ARGV[5])
local cap = tonumber(ARGV[6])

local function span(v)
  if v <= 1 then return base_window end
  return math.floor(base_window * math.min(factor ^ (v - 1), cap))
end

local violations = tonumber(redis.call('GET', violations_key) or '0')
redis.call('ZREMRANGEBYSCORE', hits_key, '-inf', now - span(violations))
local count = redis.call('ZCARD', hits_key)
if count < limit then
  redis.call('ZADD', hits_key, now, member)
  redis.call('PEXPIRE', hits_key, base_window * cap)
  return {1, limit - count - 1, 0}
end

violations = redis.call('INCR', violations_key)
local window = span(violations)
redis.call('PEXPIRE', violations_key, window)
local oldest = redis.call('ZRANGE', hits_key, 0, 0, 'WITHSCORES')
local retry_after = window
if #oldest > 0 then
  retry_after = tonumber(oldest[2]) + window - now
end
return {0, 0, math.max(retry_after, 1)}
"""


def create_redis_client(config: StoreConfig) -> aioredis.Redis:
    """Build an asyncio Redis client with explicit socket timeouts."""
    return aioredis.from_url(
        config.redis_url,
        decode_responses=True,
        socket_timeout=config.operation_timeout_seconds,
        socket_connect_timeout=config.operation_timeout_seconds,
    )


def _ttl_ms(ttl_seconds: float) -> int:
    return max(1, math.ceil(ttl_seconds * 1000))


class RedisRevocationStore:
    """:class:`~gatekeep_auth.revocation.TokenRevocationStore` on Redis.

    Per-token entries live at ``<prefix>revoked:jti:<jti>`` with a ``PX``
    expiry; Redis evicts them when the credential would have expired anyway.
    """

    def __init__(self, client: aioredis.Redis, *, key_prefix: str = "gatekeep:") -> None:
        self.client = client
        self._prefix = key_prefix
        self._revoke = client.register_script(_REVOKE_SCRIPT)
        self._revoke_subject = client.register_script(_SUBJECT_SCRIPT)

    def _jti_key(self, jti: str) -> str:
        return f"{self._prefix}revoked:jti:{jti}"

    def _subject_key(self, subject: str) -> str:
        return f"{self._prefix}revoked:sub:{subject}"

    async def revoke(self, jti: str, ttl_seconds: float) -> bool:
        if ttl_seconds <= 0:
            return False
        try:
            created = await self._revoke(keys=[self._jti_key(jti)], args=[str(time.time()), _ttl_ms(ttl_seconds)])
        except RedisError as exc:
            raise StoreUnavailable(f"revoke failed: {type(exc).__name__}") from exc
        return bool(created)

    async def is_revoked(self, jti: str) -> bool:
        try:
            return bool(await self.client.exists(self._jti_key(jti)))
        except RedisError as exc:
            raise StoreUnavailable(f"revocation lookup failed: {type(exc).__name__}") from exc

    async def revoke_subject(self, subject: str, before: datetime, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            return
        try:
            await self._revoke_subject(
                keys=[self._subject_key(subject)],
                args=[repr(before.timestamp()), _ttl_ms(ttl_seconds)],
            )
        except RedisError as exc:
            raise StoreUnavailable(f"subject revoke failed: {type(exc).__name__}") from exc

    async def subject_revoked_before(self, subject: str) -> datetime | None:
        try:
            raw = await self.client.get(self._subject_key(subject))
        except RedisError as exc:
            raise StoreUnavailable(f"subject lookup failed: {type(exc).__name__}") from exc
        if raw is None:
            return None
        return datetime.fromtimestamp(float(raw), tz=timezone.utc)


class RedisRateLimiter:
    """Sliding-log rate limiter shared by every gateway instance.

    Admitted hits are members of a sorted set scored by millisecond
    timestamp. Pruning, counting and recording run in one Lua script, so
    ``limit + k`` concurrent requests yield exactly ``limit`` admissions.
    Store errors yield :attr:`RateOutcome.UNAVAILABLE`, never an admission.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        config: RateLimitConfig,
        *,
        key_prefix: str = "gatekeep:",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.config = config
        self._prefix = key_prefix
        self._clock = clock
        self._acquire = client.register_script(_ACQUIRE_SCRIPT)

    def _keys(self, key: str, endpoint_class: EndpointClass) -> list[str]:
        base = f"{self._prefix}rate:{bucket_key(key, endpoint_class)}"
        return [f"{base}:hits", f"{base}:violations"]

    async def try_acquire(self, key: str, endpoint_class: EndpointClass) -> RateDecision:
        policy = self.config.policy_for(endpoint_class)
        if not self.config.enabled:
            return RateDecision.allow(policy.max_requests, policy.max_requests)

        args: list[Any] = [
            int(self._clock() * 1000),
            policy.window_seconds * 1000,
            policy.max_requests,
            uuid.uuid4().hex,
            self.config.backoff_factor,
            self.config.max_backoff_multiplier,
        ]
        try:
            allowed, remaining, retry_after_ms = await self._acquire(keys=self._keys(key, endpoint_class), args=args)
        except RedisError as exc:
            logger.error(
                "Rate limit store unavailable: key=%s class=%s error=%s",
                key,
                endpoint_class.value,
                type(exc).__name__,
                extra={"event": "store_unavailable", "store": "rate_limit", "key": key},
            )
            return RateDecision.unavailable()

        if int(allowed):
            return RateDecision.allow(policy.max_requests, int(remaining))
        logger.warning(
            "Rate limit exceeded: key=%s class=%s",
            key,
            endpoint_class.value,
            extra={"event": "rate_limited", "key": key, "endpoint_class": endpoint_class.value},
        )
        return RateDecision.deny(policy.max_requests, int(retry_after_ms) / 1000)

    async def reset(self, key: str, endpoint_class: EndpointClass) -> None:
        try:
            await self.client.delete(*self._keys(key, endpoint_class))
        except RedisError as exc:
            raise StoreUnavailable(f"rate limit reset failed: {type(exc).__name__}") from exc

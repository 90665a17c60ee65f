"""Tiered sliding-window rate limiter with a tagged, fail-closed result type."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Protocol, runtime_checkable

from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)


class EndpointClass(str, Enum):
    """Rate-limit policy grouping for a route."""

    LOGIN = "login"
    REGISTER = "register"
    REFRESH = "refresh"
    DEFAULT = "default"


class TierPolicy(BaseModel):
    """Limit and window for a single endpoint class."""

    model_config = {"frozen": True}

    max_requests: int = Field(ge=1)
    window_seconds: int = Field(ge=1)


def _default_tiers() -> dict[EndpointClass, TierPolicy]:
    return {
        EndpointClass.LOGIN: TierPolicy(max_requests=5, window_seconds=60),
        EndpointClass.REGISTER: TierPolicy(max_requests=3, window_seconds=60),
        EndpointClass.REFRESH: TierPolicy(max_requests=10, window_seconds=60),
        EndpointClass.DEFAULT: TierPolicy(max_requests=100, window_seconds=60),
    }


class RateLimitConfig(BaseModel):
    """Configuration for per-endpoint-class rate limiting.

    ``backoff_factor`` and ``max_backoff_multiplier`` extend the effective
    window for a key that keeps getting denied: after the ``n``-th
    consecutive denial the window is ``window * min(factor ** (n - 1), cap)``.
    """

    enabled: bool = True
    tiers: dict[EndpointClass, TierPolicy] = Field(default_factory=_default_tiers)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    max_backoff_multiplier: int = Field(default=16, ge=1)

    @model_validator(mode="after")
    def _fill_missing_tiers(self) -> RateLimitConfig:
        for endpoint_class, policy in _default_tiers().items():
            self.tiers.setdefault(endpoint_class, policy)
        return self

    def policy_for(self, endpoint_class: EndpointClass) -> TierPolicy:
        return self.tiers.get(endpoint_class) or self.tiers[EndpointClass.DEFAULT]

    def backoff_multiplier(self, violations: int) -> float:
        """Window multiplier after *violations* consecutive denials."""
        if violations <= 1:
            return 1.0
        return min(self.backoff_factor ** (violations - 1), float(self.max_backoff_multiplier))


class RateOutcome(str, Enum):
    ALLOWED = "allowed"
    DENIED = "denied"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class RateDecision:
    """Result of a single ``try_acquire`` call.

    Only ``ALLOWED`` admits a request; callers map the other outcomes to
    rejections.
    """

    outcome: RateOutcome
    limit: int = 0
    remaining: int = 0
    retry_after: int = 0

    @property
    def allowed(self) -> bool:
        return self.outcome is RateOutcome.ALLOWED

    @classmethod
    def allow(cls, limit: int, remaining: int) -> RateDecision:
        return cls(RateOutcome.ALLOWED, limit=limit, remaining=max(remaining, 0))

    @classmethod
    def deny(cls, limit: int, retry_after: float) -> RateDecision:
        return cls(RateOutcome.DENIED, limit=limit, retry_after=max(1, math.ceil(retry_after)))

    @classmethod
    def unavailable(cls) -> RateDecision:
        return cls(RateOutcome.UNAVAILABLE)


@runtime_checkable
class RateLimiterProtocol(Protocol):
    """Protocol for pluggable rate limiter implementations.

    ``try_acquire`` must count and check in one atomic step against its
    backing store; two concurrent calls for the same key must never observe
    the same pre-increment count.
    """

    async def try_acquire(self, key: str, endpoint_class: EndpointClass) -> RateDecision:
        """Count one request for *key* under *endpoint_class* and decide."""
        ...

    async def reset(self, key: str, endpoint_class: EndpointClass) -> None:
        """Clear all state for *key* under *endpoint_class*."""
        ...


def bucket_key(key: str, endpoint_class: EndpointClass) -> str:
    return f"{endpoint_class.value}:{key}"


@dataclass
class _Window:
    """Admitted hit timestamps and backoff state for one bucket."""

    hits: deque[float] = field(default_factory=deque)
    violations: int = 0
    violations_expire_at: float = 0.0
    window_seconds: int = 0

    def idle(self, now: float) -> bool:
        """True once nothing here can affect a future decision."""
        if now < self.violations_expire_at:
            return False
        return not self.hits or self.hits[-1] <= now - self.window_seconds


class InMemoryRateLimiter:
    """Sliding-log rate limiter for a single process.

    Each admitted request is recorded with its timestamp; a request is
    admitted while fewer than ``max_requests`` hits fall inside the effective
    window. The check and the record happen under one lock, which stands in
    for the atomic script a shared store would run. Multi-instance
    deployments must use :class:`~gatekeep_auth.redis_store.RedisRateLimiter`.

    Buckets that have gone idle are evicted at most once per
    ``cleanup_interval_seconds``.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        clock: Callable[[], float] = time.monotonic,
        cleanup_interval_seconds: float = 60,
    ) -> None:
        self.config = config
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = asyncio.Lock()
        self._cleanup_interval = cleanup_interval_seconds
        self._last_cleanup = clock()

    @property
    def tracked_keys(self) -> int:
        """Number of buckets currently held in memory."""
        return len(self._windows)

    def _maybe_cleanup(self, now: float) -> None:
        if now - self._last_cleanup < self._cleanup_interval:
            return
        self._last_cleanup = now
        idle = [name for name, window in self._windows.items() if window.idle(now)]
        for name in idle:
            del self._windows[name]
        if idle:
            logger.debug("Rate limiter cleanup: evicted %d idle bucket(s)", len(idle))

    async def try_acquire(self, key: str, endpoint_class: EndpointClass) -> RateDecision:
        policy = self.config.policy_for(endpoint_class)
        if not self.config.enabled:
            return RateDecision.allow(policy.max_requests, policy.max_requests)

        name = bucket_key(key, endpoint_class)
        async with self._lock:
            now = self._clock()
            self._maybe_cleanup(now)
            window = self._windows.setdefault(name, _Window())
            window.window_seconds = policy.window_seconds
            if window.violations and now >= window.violations_expire_at:
                window.violations = 0

            span = policy.window_seconds * self.config.backoff_multiplier(window.violations)
            cutoff = now - span
            while window.hits and window.hits[0] <= cutoff:
                window.hits.popleft()

            if len(window.hits) < policy.max_requests:
                window.hits.append(now)
                return RateDecision.allow(policy.max_requests, policy.max_requests - len(window.hits))

            window.violations += 1
            span = policy.window_seconds * self.config.backoff_multiplier(window.violations)
            window.violations_expire_at = now + span
            violations = window.violations
            retry_after = window.hits[0] + span - now

        logger.warning(
            "Rate limit exceeded: key=%s class=%s violations=%d",
            key,
            endpoint_class.value,
            violations,
            extra={"event": "rate_limited", "key": key, "endpoint_class": endpoint_class.value},
        )
        return RateDecision.deny(policy.max_requests, retry_after)

    async def reset(self, key: str, endpoint_class: EndpointClass) -> None:
        """Clear all state for *key* (e.g. after an operator unblocks a client)."""
        async with self._lock:
            self._windows.pop(bucket_key(key, endpoint_class), None)

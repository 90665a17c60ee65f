"""Smoke tests for the public package surface."""

import gatekeep_auth


def test_public_names_resolve() -> None:
    for name in gatekeep_auth.__all__:
        assert getattr(gatekeep_auth, name) is not None, name


def test_protocol_implementations() -> None:
    from gatekeep_auth import (
        InMemoryRateLimiter,
        InMemoryRevocationStore,
        RateLimitConfig,
        RateLimiterProtocol,
        TokenRevocationStore,
    )

    assert isinstance(InMemoryRevocationStore(), TokenRevocationStore)
    assert isinstance(InMemoryRateLimiter(RateLimitConfig()), RateLimiterProtocol)

"""Shared fixtures for gatekeep-auth tests."""

from __future__ import annotations

import time
from datetime import datetime

import pytest
from gatekeep_auth.codec import TokenCodec
from gatekeep_auth.config import AssertionConfig, GatekeepConfig, SigningKey, StoreConfig, TokenConfig
from gatekeep_auth.errors import StoreUnavailable
from gatekeep_auth.gate import AuthenticationGate
from gatekeep_auth.revocation import InMemoryRevocationStore

SIGNING_SECRET = "primary-signing-secret-at-least-32-bytes!"
ASSERTION_SECRET = "assertion-secret-key-at-least-32-bytes-long"


class FakeClock:
    """Manually advanced clock; starts at a whole second close to real time."""

    def __init__(self, start: float | None = None) -> None:
        self.now = float(int(time.time())) if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class UnavailableRevocationStore:
    """Revocation store whose backend is always unreachable."""

    def __init__(self) -> None:
        self.calls = 0

    async def revoke(self, jti: str, ttl_seconds: float) -> bool:
        self.calls += 1
        raise StoreUnavailable("store down")

    async def is_revoked(self, jti: str) -> bool:
        self.calls += 1
        raise StoreUnavailable("store down")

    async def revoke_subject(self, subject: str, before: datetime, ttl_seconds: float) -> None:
        self.calls += 1
        raise StoreUnavailable("store down")

    async def subject_revoked_before(self, subject: str) -> datetime | None:
        self.calls += 1
        raise StoreUnavailable("store down")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def token_config() -> TokenConfig:
    return TokenConfig(
        issuer="gatekeep-test",
        signing_keys=[SigningKey(kid="k1", secret=SIGNING_SECRET)],
        access_ttl_seconds=900,
        refresh_ttl_seconds=3600,
    )


@pytest.fixture
def codec(token_config: TokenConfig) -> TokenCodec:
    return TokenCodec.from_config(token_config)


@pytest.fixture
def assertion_config() -> AssertionConfig:
    return AssertionConfig(secret=ASSERTION_SECRET)


@pytest.fixture
def store_config() -> StoreConfig:
    return StoreConfig(operation_timeout_seconds=0.2, retry_attempts=1)


@pytest.fixture
def revocation_store() -> InMemoryRevocationStore:
    return InMemoryRevocationStore(cleanup_interval_seconds=0)


@pytest.fixture
def gate(codec: TokenCodec, revocation_store: InMemoryRevocationStore, store_config: StoreConfig) -> AuthenticationGate:
    return AuthenticationGate(codec, revocation_store, store_config)


@pytest.fixture
def unavailable_store() -> UnavailableRevocationStore:
    return UnavailableRevocationStore()


@pytest.fixture
def gatekeep_config() -> GatekeepConfig:
    return GatekeepConfig.from_dict(
        {
            "tokens": {
                "issuer": "gatekeep-test",
                "signing_keys": [{"kid": "k1", "secret": SIGNING_SECRET}],
                "access_ttl_seconds": 900,
                "refresh_ttl_seconds": 3600,
            },
            "assertion": {"secret": ASSERTION_SECRET},
            "store": {"operation_timeout_seconds": 0.2, "retry_attempts": 1},
        }
    )

"""Store selection and component wiring for the gateway.

Provides the factories the app factory uses to turn a validated
:class:`GatekeepConfig` into live, shared security components.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import redis.asyncio as aioredis
from gatekeep_auth.assertion import AssertionSigner
from gatekeep_auth.codec import TokenCodec
from gatekeep_auth.config import GatekeepConfig
from gatekeep_auth.enforcer import GatewayEnforcer
from gatekeep_auth.gate import AuthenticationGate
from gatekeep_auth.identity import IdentityService
from gatekeep_auth.rate_limiter import InMemoryRateLimiter, RateLimiterProtocol
from gatekeep_auth.redis_store import RedisRateLimiter, RedisRevocationStore, create_redis_client
from gatekeep_auth.revocation import InMemoryRevocationStore, TokenRevocationStore
from gatekeep_auth.tokens import TokenService
from gatekeep_auth.user_store import UserStore

logger = logging.getLogger(__name__)


@dataclass
class Stores:
    revocation: TokenRevocationStore
    rate_limiter: RateLimiterProtocol
    redis: aioredis.Redis | None = None


@dataclass
class GatewayComponents:
    """Everything the gateway app shares across requests."""

    config: GatekeepConfig
    stores: Stores
    codec: TokenCodec
    gate: AuthenticationGate
    signer: AssertionSigner
    enforcer: GatewayEnforcer
    tokens: TokenService
    identity: IdentityService | None

    async def close(self) -> None:
        if self.stores.redis is not None:
            await self.stores.redis.aclose()


def build_stores(config: GatekeepConfig) -> Stores:
    """Redis-backed stores when ``store.redis_url`` is set, in-memory otherwise.

    The in-memory stores keep state per process; running more than one
    gateway instance against them lets revocations and rate counts diverge.
    """
    if config.store.redis_url:
        client = create_redis_client(config.store)
        logger.info("Using Redis-backed revocation and rate-limit stores")
        return Stores(
            revocation=RedisRevocationStore(client, key_prefix=config.store.key_prefix),
            rate_limiter=RedisRateLimiter(client, config.rate_limit, key_prefix=config.store.key_prefix),
            redis=client,
        )

    logger.warning(
        "No store.redis_url configured; using in-memory revocation and rate-limit stores. "
        "State is lost on restart and not shared between gateway instances.",
        extra={"event": "in_memory_store", "store": "revocation,rate_limit"},
    )
    return Stores(revocation=InMemoryRevocationStore(), rate_limiter=InMemoryRateLimiter(config.rate_limit))


def build_components(
    config: GatekeepConfig,
    *,
    stores: Stores | None = None,
    user_store: UserStore | None = None,
) -> GatewayComponents:
    """Wire the security core from *config*.

    Raises:
        ConfigError: Key material or another required setting is unusable.
    """
    stores = stores or build_stores(config)
    codec = TokenCodec.from_config(config.tokens)
    gate = AuthenticationGate(codec, stores.revocation, config.store)
    signer = AssertionSigner(config.assertion)
    identity = IdentityService(config.identity, user_store) if config.identity.enabled else None
    return GatewayComponents(
        config=config,
        stores=stores,
        codec=codec,
        gate=gate,
        signer=signer,
        enforcer=GatewayEnforcer(config, gate, stores.rate_limiter, signer),
        tokens=TokenService(codec, gate, config.tokens, config.store),
        identity=identity,
    )

"""Gatekeep Auth: token lifecycle, revocation, rate limiting and identity propagation."""

from gatekeep_auth.assertion import AssertionSigner, AssertionVerifier, InternalAssertion
from gatekeep_auth.codec import Claims, Credential, TokenClass, TokenCodec
from gatekeep_auth.config import AssertionConfig, GatekeepConfig, StoreConfig, TokenConfig
from gatekeep_auth.context import ANONYMOUS, Identity
from gatekeep_auth.downstream import DownstreamVerifier, get_verified_identity
from gatekeep_auth.enforcer import EnforcementMiddleware, GatewayEnforcer
from gatekeep_auth.errors import (
    AssertionInvalid,
    AuthenticationError,
    ConfigError,
    Expired,
    GatekeepError,
    MalformedClaims,
    Revoked,
    SignatureInvalid,
    StoreUnavailable,
)
from gatekeep_auth.gate import AuthenticationGate, AuthOutcome, RejectReason
from gatekeep_auth.identity import IdentityService
from gatekeep_auth.rate_limiter import (
    EndpointClass,
    InMemoryRateLimiter,
    RateDecision,
    RateLimitConfig,
    RateLimiterProtocol,
    RateOutcome,
)
from gatekeep_auth.redis_store import RedisRateLimiter, RedisRevocationStore
from gatekeep_auth.revocation import InMemoryRevocationStore, TokenRevocationStore
from gatekeep_auth.router import create_auth_router
from gatekeep_auth.tokens import TokenPair, TokenService
from gatekeep_auth.user_store import InMemoryUserStore, UserRecord, UserStore
from gatekeep_auth.websocket import authenticate_websocket

__all__ = [
    "ANONYMOUS",
    "AssertionConfig",
    "AssertionInvalid",
    "AssertionSigner",
    "AssertionVerifier",
    "AuthenticationError",
    "AuthenticationGate",
    "AuthOutcome",
    "Claims",
    "ConfigError",
    "Credential",
    "DownstreamVerifier",
    "EndpointClass",
    "EnforcementMiddleware",
    "Expired",
    "GatekeepConfig",
    "GatekeepError",
    "GatewayEnforcer",
    "Identity",
    "IdentityService",
    "InMemoryRateLimiter",
    "InMemoryRevocationStore",
    "InMemoryUserStore",
    "InternalAssertion",
    "MalformedClaims",
    "RateDecision",
    "RateLimitConfig",
    "RateLimiterProtocol",
    "RateOutcome",
    "RedisRateLimiter",
    "RedisRevocationStore",
    "RejectReason",
    "Revoked",
    "SignatureInvalid",
    "StoreConfig",
    "StoreUnavailable",
    "TokenClass",
    "TokenCodec",
    "TokenConfig",
    "TokenPair",
    "TokenRevocationStore",
    "TokenService",
    "UserRecord",
    "UserStore",
    "authenticate_websocket",
    "create_auth_router",
    "get_verified_identity",
]

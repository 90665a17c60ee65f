"""Tests for GatewayEnforcer admission and EnforcementMiddleware."""

from __future__ import annotations

import asyncio
import time

import pytest
from gatekeep_auth.assertion import AssertionSigner, AssertionVerifier
from gatekeep_auth.codec import TokenClass, TokenCodec
from gatekeep_auth.config import GatekeepConfig
from gatekeep_auth.enforcer import AUTH_POLICY, RATE_POLICY, EnforcementMiddleware, GatewayEnforcer
from gatekeep_auth.errors import StoreUnavailable
from gatekeep_auth.gate import AuthenticationGate, RejectReason
from gatekeep_auth.rate_limiter import EndpointClass, InMemoryRateLimiter, RateDecision, RateOutcome
from gatekeep_auth.revocation import InMemoryRevocationStore
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient


class _DownLimiter:
    async def try_acquire(self, key: str, endpoint_class: EndpointClass) -> RateDecision:
        raise StoreUnavailable("rate store down")

    async def reset(self, key: str, endpoint_class: EndpointClass) -> None:
        raise StoreUnavailable("rate store down")


class _Harness:
    def __init__(self, config: GatekeepConfig, *, limiter=None, store=None) -> None:
        self.config = config
        self.codec = TokenCodec.from_config(config.tokens)
        self.store = store or InMemoryRevocationStore()
        self.gate = AuthenticationGate(self.codec, self.store, config.store)
        self.limiter = limiter or InMemoryRateLimiter(config.rate_limit)
        self.enforcer = GatewayEnforcer(config, self.gate, self.limiter, AssertionSigner(config.assertion))

        async def echo(request: Request) -> JSONResponse:
            return JSONResponse(
                {
                    "subject": request.state.identity.subject,
                    "headers": {k: v for k, v in request.headers.items()},
                }
            )

        paths = ["/health", "/auth/login", "/auth/register", "/api/profile"]
        app = Starlette(routes=[Route(p, echo, methods=["GET", "POST"]) for p in paths])
        app.add_middleware(EnforcementMiddleware, enforcer=self.enforcer)
        self.client = TestClient(app)

    def token(self, subject: str = "user-1") -> str:
        return self.codec.issue(subject, TokenClass.ACCESS, 60).token

    def auth(self, subject: str = "user-1") -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token(subject)}"}


@pytest.fixture
def harness(gatekeep_config: GatekeepConfig) -> _Harness:
    return _Harness(gatekeep_config)


def test_every_rejection_has_a_policy() -> None:
    assert set(RATE_POLICY) == {RateOutcome.DENIED, RateOutcome.UNAVAILABLE}
    assert set(AUTH_POLICY) == set(RejectReason)
    assert {action.status_code for action in AUTH_POLICY.values()} == {401}


class TestRouting:
    def test_endpoint_classes_use_longest_segment_prefix(self, harness: _Harness) -> None:
        enforcer = harness.enforcer
        assert enforcer.endpoint_class_for("/auth/login") is EndpointClass.LOGIN
        assert enforcer.endpoint_class_for("/auth/login/") is EndpointClass.LOGIN
        assert enforcer.endpoint_class_for("/auth/refresh") is EndpointClass.REFRESH
        assert enforcer.endpoint_class_for("/auth/loginx") is EndpointClass.DEFAULT
        assert enforcer.endpoint_class_for("/api/profile") is EndpointClass.DEFAULT

    def test_path_categories(self, harness: _Harness) -> None:
        enforcer = harness.enforcer
        assert enforcer.is_public("/health")
        assert not enforcer.requires_authentication("/auth/login")
        assert enforcer.requires_authentication("/api/profile")
        assert enforcer.requires_authentication("/health/../api")


class TestAuthentication:
    def test_public_path_passes_without_token(self, harness: _Harness) -> None:
        assert harness.client.get("/health").status_code == 200

    def test_missing_token_is_401(self, harness: _Harness) -> None:
        resp = harness.client.get("/api/profile")
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Authentication required"

    def test_valid_token_is_admitted(self, harness: _Harness) -> None:
        resp = harness.client.get("/api/profile", headers=harness.auth())
        assert resp.status_code == 200
        assert resp.json()["subject"] == "user-1"
        assert "x-ratelimit-limit" in resp.headers

    def test_revoked_token_is_401(self, harness: _Harness) -> None:
        token = harness.token()
        claims = harness.codec.verify(token)
        asyncio.run(harness.store.revoke(claims.jti, 60))
        resp = harness.client.get("/api/profile", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Token has been revoked"

    def test_revocation_store_down_is_401(self, gatekeep_config: GatekeepConfig, unavailable_store) -> None:
        harness = _Harness(gatekeep_config, store=unavailable_store)
        resp = harness.client.get("/api/profile", headers=harness.auth())
        assert resp.status_code == 401

    def test_anonymous_path_needs_no_token(self, harness: _Harness) -> None:
        resp = harness.client.post("/auth/login")
        assert resp.status_code == 200
        assert "x-internal-assertion" not in resp.json()["headers"]


class TestIdentityPropagation:
    def test_assertion_attached_and_verifiable(self, harness: _Harness) -> None:
        resp = harness.client.get("/api/profile", headers=harness.auth("user-7"))
        assertion = resp.json()["headers"]["x-internal-assertion"]
        identity = AssertionVerifier(harness.config.assertion).verify(assertion)
        assert identity.subject == "user-7"

    def test_client_identity_headers_are_stripped(self, harness: _Harness) -> None:
        headers = harness.auth() | {
            "X-User-Id": "admin",
            "X-User-Roles": "admin",
            "X-Internal-Assertion": "forged",
        }
        seen = harness.client.get("/api/profile", headers=headers).json()["headers"]
        assert "x-user-id" not in seen
        assert "x-user-roles" not in seen
        assert seen["x-internal-assertion"] != "forged"

    def test_identity_headers_stripped_on_anonymous_paths(self, harness: _Harness) -> None:
        seen = harness.client.post("/auth/login", headers={"X-User-Id": "admin", "X-Internal-Assertion": "x"}).json()
        assert "x-user-id" not in seen["headers"]
        assert "x-internal-assertion" not in seen["headers"]


class TestRateLimiting:
    def test_sixth_login_is_429_with_retry_after(self, harness: _Harness) -> None:
        statuses = [harness.client.post("/auth/login").status_code for _ in range(5)]
        resp = harness.client.post("/auth/login")

        assert statuses == [200] * 5
        assert resp.status_code == 429
        assert int(resp.headers["retry-after"]) >= 1
        assert resp.json()["retry_after"] == int(resp.headers["retry-after"])

    def test_register_tier_is_separate_from_login(self, harness: _Harness) -> None:
        for _ in range(3):
            assert harness.client.post("/auth/register").status_code == 200
        assert harness.client.post("/auth/register").status_code == 429
        assert harness.client.post("/auth/login").status_code == 200

    def test_rate_store_down_is_503(self, gatekeep_config: GatekeepConfig) -> None:
        harness = _Harness(gatekeep_config, limiter=_DownLimiter())
        assert harness.client.post("/auth/login").status_code == 503
        assert harness.client.get("/api/profile", headers=harness.auth()).status_code == 503

    def test_forwarded_for_ignored_by_default(self, harness: _Harness) -> None:
        for i in range(5):
            harness.client.post("/auth/login", headers={"X-Forwarded-For": f"10.0.0.{i}"})
        assert harness.client.post("/auth/login", headers={"X-Forwarded-For": "10.0.0.99"}).status_code == 429

    def test_forwarded_for_honoured_when_trusted(self, gatekeep_config: GatekeepConfig) -> None:
        gateway = gatekeep_config.gateway.model_copy(update={"trust_forwarded_for": True})
        harness = _Harness(gatekeep_config.model_copy(update={"gateway": gateway}))
        for _ in range(5):
            harness.client.post("/auth/login", headers={"X-Forwarded-For": "10.0.0.1"})
        assert harness.client.post("/auth/login", headers={"X-Forwarded-For": "10.0.0.2"}).status_code == 200

    def test_default_class_keyed_by_verified_subject(self, gatekeep_config: GatekeepConfig) -> None:
        limits = gatekeep_config.rate_limit.model_copy(deep=True)
        limits.tiers[EndpointClass.DEFAULT] = limits.tiers[EndpointClass.DEFAULT].model_copy(
            update={"max_requests": 2}
        )
        harness = _Harness(gatekeep_config.model_copy(update={"rate_limit": limits}))

        for _ in range(2):
            assert harness.client.get("/api/profile", headers=harness.auth("alice")).status_code == 200
        assert harness.client.get("/api/profile", headers=harness.auth("alice")).status_code == 429
        assert harness.client.get("/api/profile", headers=harness.auth("bob")).status_code == 200

    def test_unverifiable_token_keyed_by_ip(self, harness: _Harness) -> None:
        other = TokenCodec.from_config(harness.config.tokens, clock=lambda: time.time() - 1000)
        expired = other.issue("alice", TokenClass.ACCESS, 10).token
        enforcer = harness.enforcer
        assert enforcer.rate_key(_request(expired), EndpointClass.DEFAULT) == "ip:10.1.1.1"
        valid = harness.token("alice")
        assert enforcer.rate_key(_request(valid), EndpointClass.DEFAULT) == "sub:alice"
        assert enforcer.rate_key(_request(valid), EndpointClass.LOGIN) == "ip:10.1.1.1"


def _request(token: str) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/api/profile",
        "query_string": b"",
        "headers": [(b"authorization", f"Bearer {token}".encode())],
        "client": ("10.1.1.1", 50000),
        "server": ("gateway", 80),
        "scheme": "http",
    }
    return Request(scope)

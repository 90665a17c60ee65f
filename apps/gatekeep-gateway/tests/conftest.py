"""Shared fixtures for gatekeep-gateway tests."""

from __future__ import annotations

from collections.abc import Iterator

import httpx
import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient
from gatekeep_auth.config import GatekeepConfig
from gatekeep_auth.context import Identity
from gatekeep_auth.downstream import DownstreamVerifier, get_verified_identity
from gatekeep_gateway.factory import create_app
from gatekeep_gateway.startup import build_components

SIGNING_SECRET = "gateway-test-signing-secret-32-bytes-min"
ASSERTION_SECRET = "gateway-test-assertion-secret-32-bytes-min"
DOWNSTREAM_URL = "http://orders.internal"


@pytest.fixture()
def gateway_config() -> GatekeepConfig:
    return GatekeepConfig.from_dict(
        {
            "tokens": {"signing_keys": [{"kid": "k1", "secret": SIGNING_SECRET}]},
            "assertion": {"secret": ASSERTION_SECRET},
            "gateway": {"upstreams": {"/api": DOWNSTREAM_URL}},
        }
    )


@pytest.fixture()
def downstream_app(gateway_config: GatekeepConfig) -> FastAPI:
    """A service behind the gateway that shares only the assertion config."""
    app = FastAPI()

    @app.get("/api/me")
    async def me(identity: Identity = Depends(get_verified_identity)) -> dict[str, str]:
        return {"subject": identity.subject, "source": identity.source}

    @app.api_route("/api/echo", methods=["GET", "POST"])
    async def echo(request: Request) -> dict[str, object]:
        return {
            "method": request.method,
            "query": request.url.query,
            "body": (await request.body()).decode(),
            "headers": dict(request.headers),
        }

    app.add_middleware(DownstreamVerifier, config=gateway_config.assertion)
    return app


@pytest.fixture()
def gateway(gateway_config: GatekeepConfig, downstream_app: FastAPI) -> Iterator[TestClient]:
    app = create_app(
        gateway_config,
        components=build_components(gateway_config),
        transport=httpx.ASGITransport(app=downstream_app),
    )
    with TestClient(app) as client:
        yield client


@pytest.fixture()
def credentials() -> dict[str, str]:
    return {"email": "dana@example.com", "password": "correct-horse-battery"}


@pytest.fixture()
def session(gateway: TestClient, credentials: dict[str, str]) -> dict[str, object]:
    """Register an account through the gateway and return its token pair."""
    resp = gateway.post("/auth/register", json=credentials)
    assert resp.status_code == 201
    return resp.json()

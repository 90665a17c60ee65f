"""FastAPI app factory: the thin composition shell for the gateway.

Wires the ``gatekeep-auth`` security core into a servable application:

- :class:`~gatekeep_gateway.access_log.AccessLogMiddleware` around everything
- :class:`~gatekeep_auth.enforcer.EnforcementMiddleware` for admission
- the credential router (register, login, refresh, logout)
- an authenticated WebSocket endpoint
- a catch-all route that forwards to the configured upstreams
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from gatekeep_auth.config import GatekeepConfig
from gatekeep_auth.enforcer import EnforcementMiddleware
from gatekeep_auth.router import create_auth_router
from gatekeep_auth.websocket import authenticate_websocket
from starlette.responses import Response

from gatekeep_gateway.access_log import AccessLogMiddleware
from gatekeep_gateway.proxy import Forwarder
from gatekeep_gateway.startup import GatewayComponents, build_components

logger = logging.getLogger(__name__)

_PROXY_METHODS = ["GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"]


def create_app(
    config: GatekeepConfig | None = None,
    *,
    components: GatewayComponents | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Construct the gateway application.

    Args:
        config: Validated configuration. Defaults to
            :meth:`GatekeepConfig.from_env`; a missing or invalid file raises
            :class:`~gatekeep_auth.errors.ConfigError` before anything serves.
        components: Pre-built security components (tests inject stores here).
        transport: Optional ``httpx`` transport for upstream calls.
    """
    config = config or (components.config if components else GatekeepConfig.from_env())
    components = components or build_components(config)
    forwarder = Forwarder(config, transport=transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await forwarder.aclose()
        await components.close()

    app = FastAPI(title="Gatekeep Gateway", version="0.1.0", lifespan=lifespan)
    app.state.components = components
    app.state.forwarder = forwarder

    app.add_middleware(EnforcementMiddleware, enforcer=components.enforcer)
    app.add_middleware(AccessLogMiddleware, slow_request_ms=config.gateway.slow_request_ms)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(create_auth_router(components.tokens, components.identity))

    @app.websocket("/ws")
    async def ws_echo(websocket: WebSocket) -> None:
        """Echo frames back, tagged with the verified subject."""
        identity = await authenticate_websocket(websocket, components.gate, components.enforcer)
        if identity is None:
            return
        try:
            while True:
                message = await websocket.receive_text()
                await websocket.send_json({"subject": identity.subject, "message": message})
        except WebSocketDisconnect:
            logger.debug("WebSocket closed: user_id=%s", identity.subject)

    @app.api_route("/{path:path}", methods=_PROXY_METHODS, include_in_schema=False)
    async def proxy(request: Request) -> Response:
        return await forwarder.forward(request)

    logger.info(
        "Gatekeep gateway ready: %d upstream(s), store=%s",
        len(config.gateway.upstreams),
        "redis" if components.stores.redis is not None else "memory",
    )
    return app

"""WebSocket handshake authentication.

Browsers cannot set ``Authorization`` on a WebSocket upgrade, so the token
may instead travel as the subprotocol pair ``bearer, <token>``. The query
string is never consulted; it ends up in access logs.
"""

from __future__ import annotations

import logging

from starlette import status
from starlette.websockets import WebSocket

from gatekeep_auth.context import Identity
from gatekeep_auth.enforcer import GatewayEnforcer
from gatekeep_auth.gate import AuthenticationGate
from gatekeep_auth.paths import bearer_token
from gatekeep_auth.rate_limiter import RateOutcome

logger = logging.getLogger(__name__)

BEARER_SUBPROTOCOL = "bearer"


def extract_websocket_token(websocket: WebSocket) -> tuple[str | None, str | None]:
    """Return ``(token, subprotocol_to_echo)`` for a pending handshake."""
    token = bearer_token(websocket)
    if token:
        return token, None
    protocols = [p.strip() for p in websocket.scope.get("subprotocols", [])]
    if len(protocols) >= 2 and protocols[0].lower() == BEARER_SUBPROTOCOL and protocols[1]:
        return protocols[1], BEARER_SUBPROTOCOL
    return None, None


async def authenticate_websocket(
    websocket: WebSocket,
    gate: AuthenticationGate,
    enforcer: GatewayEnforcer | None = None,
) -> Identity | None:
    """Rate limit and authenticate before the upgrade completes.

    With an *enforcer* the handshake counts as one request of its path's
    endpoint class. On rejection the socket is closed without ever being
    accepted and ``None`` is returned: 1008 (policy violation) for a denied
    rate limit or credential, 1011 when the rate-limit store is down. On
    success the socket is accepted and the identity is stored on
    ``websocket.state.identity``.
    """
    if enforcer is not None:
        admission = await enforcer.admit_rate(websocket)
        if not admission.admitted:
            unavailable = admission.rate is not None and admission.rate.outcome is RateOutcome.UNAVAILABLE
            code = status.WS_1011_INTERNAL_ERROR if unavailable else status.WS_1008_POLICY_VIOLATION
            await websocket.close(code=code)
            return None

    token, subprotocol = extract_websocket_token(websocket)
    outcome = await gate.authenticate(token)
    if outcome.identity is None:
        logger.warning(
            "WebSocket handshake rejected: path=%s reason=%s",
            websocket.url.path,
            outcome.reason.value if outcome.reason else "unknown",
            extra={"event": "ws_handshake_rejected", "path": websocket.url.path},
        )
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return None

    await websocket.accept(subprotocol=subprotocol)
    websocket.state.identity = outcome.identity
    logger.info(
        "WebSocket handshake accepted: user_id=%s path=%s",
        outcome.identity.subject,
        websocket.url.path,
        extra={"event": "auth_success", "user_id": outcome.identity.subject, "transport": "websocket"},
    )
    return outcome.identity

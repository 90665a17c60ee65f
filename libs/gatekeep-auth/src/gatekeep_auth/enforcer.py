"""Request admission at the gateway trust boundary.

Order per request: rate limit, then authentication, then assertion minting
and identity-header stripping. Every non-admitted outcome is mapped to a
response through :data:`RATE_POLICY` or :data:`AUTH_POLICY`; nothing falls
through to "allow".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import HTTPConnection, Request
from starlette.responses import JSONResponse, Response

from gatekeep_auth.assertion import AssertionSigner
from gatekeep_auth.config import GatekeepConfig
from gatekeep_auth.context import ANONYMOUS, Identity
from gatekeep_auth.errors import StoreUnavailable, TokenError
from gatekeep_auth.gate import AuthenticationGate, RejectReason
from gatekeep_auth.paths import bearer_token, client_ip, longest_prefix, matches_any
from gatekeep_auth.rate_limiter import EndpointClass, RateDecision, RateLimiterProtocol, RateOutcome
from gatekeep_auth.resilience import call_store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RejectAction:
    status_code: int
    detail: str
    log_level: int
    event: str


RATE_POLICY: dict[RateOutcome, RejectAction] = {
    RateOutcome.DENIED: RejectAction(429, "Too many requests, try again later", logging.WARNING, "rate_limited"),
    RateOutcome.UNAVAILABLE: RejectAction(503, "Service temporarily unavailable", logging.ERROR, "store_unavailable"),
}

# Every authentication rejection is a 401, including an unreachable store.
AUTH_POLICY: dict[RejectReason, RejectAction] = {
    RejectReason.MISSING: RejectAction(401, "Authentication required", logging.INFO, "auth_missing"),
    RejectReason.INVALID: RejectAction(401, "Authentication required", logging.WARNING, "token_validation_failed"),
    RejectReason.EXPIRED: RejectAction(401, "Token has expired", logging.INFO, "token_validation_failed"),
    RejectReason.REVOKED: RejectAction(401, "Token has been revoked", logging.WARNING, "token_revoked"),
    RejectReason.UNAVAILABLE: RejectAction(401, "Authentication required", logging.ERROR, "store_unavailable"),
}


@dataclass(frozen=True)
class Admission:
    """Result of :meth:`GatewayEnforcer.admit`."""

    identity: Identity = ANONYMOUS
    assertion: str | None = None
    rejection: RejectAction | None = None
    rate: RateDecision | None = None

    @property
    def admitted(self) -> bool:
        return self.rejection is None

    def rate_headers(self) -> dict[str, str]:
        if self.rate is None or self.rate.outcome is RateOutcome.UNAVAILABLE:
            return {}
        headers = {"X-RateLimit-Limit": str(self.rate.limit), "X-RateLimit-Remaining": str(self.rate.remaining)}
        if self.rate.outcome is RateOutcome.DENIED:
            headers["Retry-After"] = str(self.rate.retry_after)
        return headers

    def to_response(self) -> JSONResponse:
        if self.rejection is None:
            raise ValueError("admitted requests have no rejection response")
        content: dict[str, Any] = {"detail": self.rejection.detail}
        if self.rate is not None and self.rate.outcome is RateOutcome.DENIED:
            content["retry_after"] = self.rate.retry_after
        return JSONResponse(status_code=self.rejection.status_code, content=content, headers=self.rate_headers())


class GatewayEnforcer:
    """Decides whether a request may pass the gateway."""

    def __init__(
        self,
        config: GatekeepConfig,
        gate: AuthenticationGate,
        limiter: RateLimiterProtocol,
        signer: AssertionSigner,
    ) -> None:
        self.config = config
        self.gate = gate
        self.limiter = limiter
        self.signer = signer
        self._identity_headers = config.assertion.identity_headers()

    def endpoint_class_for(self, path: str) -> EndpointClass:
        match = longest_prefix(path, self.config.gateway.endpoint_classes)
        return match[1] if match else EndpointClass.DEFAULT

    def is_public(self, path: str) -> bool:
        return matches_any(path, self.config.gateway.public_paths)

    def requires_authentication(self, path: str) -> bool:
        return not self.is_public(path) and not matches_any(path, self.config.gateway.anonymous_paths)

    def rate_key(self, conn: HTTPConnection, endpoint_class: EndpointClass) -> str:
        """IP for credential endpoints; verified subject, else IP, for the rest."""
        ip = f"ip:{client_ip(conn, self.config.gateway.trust_forwarded_for)}"
        if endpoint_class is not EndpointClass.DEFAULT or self.config.gateway.rate_limit_key == "ip":
            return ip
        token = bearer_token(conn)
        if not token:
            return ip
        try:
            claims = self.gate.codec.verify(token)
        except TokenError:
            return ip
        return f"sub:{claims.sub}"

    async def _acquire(self, key: str, endpoint_class: EndpointClass) -> RateDecision:
        try:
            return await call_store(
                lambda: self.limiter.try_acquire(key, endpoint_class),
                timeout=self.config.store.operation_timeout_seconds,
                what="try_acquire",
            )
        except StoreUnavailable:
            return RateDecision.unavailable()

    def _reject(
        self,
        conn: HTTPConnection,
        outcome: RateOutcome | RejectReason,
        rate: RateDecision | None,
    ) -> Admission:
        action = RATE_POLICY[outcome] if isinstance(outcome, RateOutcome) else AUTH_POLICY[outcome]
        logger.log(
            action.log_level,
            "Request rejected: status=%d reason=%s path=%s",
            action.status_code,
            outcome.value,
            conn.url.path,
            extra={"event": action.event, "reason": outcome.value, "path": conn.url.path},
        )
        return Admission(rejection=action, rate=rate)

    async def admit_rate(self, conn: HTTPConnection) -> Admission:
        """Count *conn* against its endpoint class without authenticating it.

        Used on its own by entry points that authenticate themselves, such as
        the WebSocket handshake.
        """
        if self.is_public(conn.url.path):
            return Admission()
        endpoint_class = self.endpoint_class_for(conn.url.path)
        decision = await self._acquire(self.rate_key(conn, endpoint_class), endpoint_class)
        if not decision.allowed:
            return self._reject(conn, decision.outcome, decision)
        return Admission(rate=decision)

    async def admit(self, conn: HTTPConnection) -> Admission:
        path = conn.url.path
        if self.is_public(path):
            return Admission()

        admission = await self.admit_rate(conn)
        if not admission.admitted or not self.requires_authentication(path):
            return admission
        decision = admission.rate

        outcome = await self.gate.authenticate(bearer_token(conn))
        if outcome.identity is None:
            return self._reject(conn, outcome.reason or RejectReason.INVALID, decision)

        identity = outcome.identity
        logger.info(
            "Authentication successful: user_id=%s path=%s",
            identity.subject,
            path,
            extra={"event": "auth_success", "user_id": identity.subject, "path": path},
        )
        return Admission(identity=identity, assertion=self.signer.mint(identity), rate=decision)

    def sanitized_headers(self, headers: list[tuple[bytes, bytes]], assertion: str | None) -> list[tuple[bytes, bytes]]:
        """Drop client-supplied identity headers and attach *assertion*."""
        kept = [(k, v) for k, v in headers if k.decode("latin-1").lower() not in self._identity_headers]
        if assertion:
            kept.append((self.signer.header_name.lower().encode("latin-1"), assertion.encode("latin-1")))
        return kept


class EnforcementMiddleware(BaseHTTPMiddleware):
    """Starlette middleware wrapping :class:`GatewayEnforcer`.

    Admitted requests continue with ``request.state.identity`` and
    ``request.state.assertion`` set, and with their raw headers rewritten so
    that only the gateway-minted assertion carries identity.
    """

    def __init__(self, app: Any, enforcer: GatewayEnforcer) -> None:
        super().__init__(app)
        self.enforcer = enforcer

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        admission = await self.enforcer.admit(request)
        if not admission.admitted:
            return admission.to_response()

        request.scope["headers"] = self.enforcer.sanitized_headers(list(request.scope["headers"]), admission.assertion)
        request.state.identity = admission.identity
        request.state.assertion = admission.assertion
        response = await call_next(request)
        for name, value in admission.rate_headers().items():
            response.headers.setdefault(name, value)
        return response

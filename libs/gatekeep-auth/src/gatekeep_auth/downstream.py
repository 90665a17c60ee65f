"""Assertion re-verification for services behind the gateway."""

from __future__ import annotations

import logging
from typing import Any, Callable

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from gatekeep_auth.assertion import AssertionVerifier
from gatekeep_auth.config import AssertionConfig
from gatekeep_auth.context import ANONYMOUS, Identity
from gatekeep_auth.errors import AssertionInvalid
from gatekeep_auth.paths import matches_any

logger = logging.getLogger(__name__)

IDENTITY_KEY = "identity"


class DownstreamVerifier(BaseHTTPMiddleware):
    """Starlette middleware that trusts nothing but a valid assertion.

    A request is rejected with 401 unless it carries a fresh, correctly
    signed assertion, no matter which other identity headers it sets or
    where on the network it came from. Gateway-only headers such as
    ``X-User-Id`` are never read.
    """

    def __init__(
        self,
        app: Any,
        config: AssertionConfig,
        public_paths: list[str] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        super().__init__(app)
        self.config = config
        self.public_paths = public_paths or []
        self._verifier = AssertionVerifier(config, clock) if clock else AssertionVerifier(config)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if matches_any(request.url.path, self.public_paths):
            request.state.identity = ANONYMOUS
            return await call_next(request)

        try:
            identity = self._verifier.verify(request.headers.get(self.config.header_name))
        except AssertionInvalid as exc:
            logger.warning(
                "Internal assertion rejected: path=%s method=%s reason=%s",
                request.url.path,
                request.method,
                exc,
                extra={"event": "assertion_rejected", "path": request.url.path, "reason": str(exc)},
            )
            return JSONResponse(status_code=401, content={"detail": "Authentication required"})

        request.state.identity = identity
        return await call_next(request)


def get_verified_identity(request: Request) -> Identity:
    """FastAPI dependency returning the identity attached by the verifying middleware.

    Usage:
        @app.get("/me")
        async def me(identity: Identity = Depends(get_verified_identity)):
            return {"subject": identity.subject}
    """
    identity: Identity | None = getattr(request.state, IDENTITY_KEY, None)
    if identity is None:
        return ANONYMOUS
    return identity

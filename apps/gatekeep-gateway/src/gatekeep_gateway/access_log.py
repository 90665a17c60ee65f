"""Per-request access logging for the gateway."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Log method, path, subject, status and duration of every HTTP request.

    Installed outermost so the duration covers admission as well as the
    route. The subject is read from ``request.state.identity`` after the
    inner layers ran; requests that never authenticated log ``anonymous``.
    """

    def __init__(
        self,
        app: Any,
        slow_request_ms: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(app)
        self.slow_request_ms = slow_request_ms
        self._clock = clock

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start = self._clock()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            self._log(request, status_code, (self._clock() - start) * 1000)

    def _log(self, request: Request, status_code: int, duration_ms: float) -> None:
        identity = getattr(request.state, "identity", None)
        user_id = identity.subject if identity is not None else "anonymous"
        method, path = request.method, request.url.path
        fields = {
            "method": method,
            "path": path,
            "status": status_code,
            "duration_ms": round(duration_ms, 1),
            "user_id": user_id,
        }
        logger.info(
            "%s %s -> %d in %.1fms [user_id=%s]",
            method,
            path,
            status_code,
            duration_ms,
            user_id,
            extra={"event": "request_completed", **fields},
        )
        if duration_ms > self.slow_request_ms:
            logger.warning(
                "Slow request: %s %s took %.1fms",
                method,
                path,
                duration_ms,
                extra={"event": "slow_request", **fields},
            )

"""Downstream forwarding for admitted requests."""

from __future__ import annotations

import logging

import httpx
from gatekeep_auth.config import GatekeepConfig
from gatekeep_auth.paths import longest_prefix
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
    }
)

# Safe to re-send: repeating them has no additional downstream effect.
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})


class Forwarder:
    """Relays requests to the upstream that owns their path prefix.

    Identity headers are dropped once more at this last hop and replaced by
    the assertion the enforcer minted. Transport failures of idempotent
    requests are retried at most ``retry_budget`` times with the same
    assertion; POST and PATCH are sent exactly once.
    """

    def __init__(
        self,
        config: GatekeepConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.upstreams = config.gateway.upstreams
        self.retry_budget = config.gateway.retry_budget
        self.header_name = config.assertion.header_name
        self._blocked = HOP_BY_HOP_HEADERS | config.assertion.identity_headers()
        self.client = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(config.gateway.forward_timeout_seconds),
            follow_redirects=False,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    def upstream_url(self, path: str, query: str = "") -> str | None:
        match = longest_prefix(path, self.upstreams)
        if match is None:
            return None
        url = match[1].rstrip("/") + path
        return f"{url}?{query}" if query else url

    def outbound_headers(self, request: Request) -> dict[str, str]:
        headers = {k: v for k, v in request.headers.items() if k.lower() not in self._blocked}
        assertion = getattr(request.state, "assertion", None)
        if assertion:
            headers[self.header_name] = assertion
        return headers

    async def forward(self, request: Request) -> Response:
        url = self.upstream_url(request.url.path, request.url.query)
        if url is None:
            return JSONResponse(status_code=404, content={"detail": "Not Found"})

        method = request.method.upper()
        attempts = 1 + (self.retry_budget if method in IDEMPOTENT_METHODS else 0)
        headers = self.outbound_headers(request)
        body = await request.body()

        for attempt in range(1, attempts + 1):
            try:
                upstream = await self.client.request(method, url, headers=headers, content=body)
                break
            except httpx.TransportError as exc:
                timed_out = isinstance(exc, httpx.TimeoutException)
                if attempt < attempts:
                    logger.warning(
                        "Upstream call failed, retrying: method=%s path=%s attempt=%d error=%s",
                        method,
                        request.url.path,
                        attempt,
                        type(exc).__name__,
                        extra={"event": "upstream_retry", "path": request.url.path, "attempt": attempt},
                    )
                    continue
                logger.error(
                    "Upstream call failed: method=%s path=%s error=%s",
                    method,
                    request.url.path,
                    type(exc).__name__,
                    extra={"event": "upstream_error", "path": request.url.path, "timeout": timed_out},
                )
                if timed_out:
                    return JSONResponse(status_code=504, content={"detail": "Upstream timed out"})
                return JSONResponse(status_code=502, content={"detail": "Upstream unavailable"})

        response_headers = {
            k: v
            for k, v in upstream.headers.items()
            if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() != "content-encoding"
        }
        return Response(content=upstream.content, status_code=upstream.status_code, headers=response_headers)

"""FastAPI router factory for the credential endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from gatekeep_auth.errors import AuthenticationError, StoreUnavailable
from gatekeep_auth.identity import IdentityService
from gatekeep_auth.paths import bearer_token
from gatekeep_auth.tokens import TokenService

logger = logging.getLogger(__name__)


class PasswordCredentials(BaseModel):
    email: str
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class LogoutRequest(BaseModel):
    refresh_token: str | None = None
    everywhere: bool = False


def _unavailable(exc: StoreUnavailable, operation: str) -> HTTPException:
    logger.error(
        "Credential store unavailable during %s: %s",
        operation,
        exc,
        extra={"event": "store_unavailable", "store": "revocation", "op": operation},
    )
    return HTTPException(status_code=503, detail="Service temporarily unavailable")


def create_auth_router(
    tokens: TokenService,
    identity: IdentityService | None = None,
    *,
    prefix: str = "/auth",
) -> APIRouter:
    """Create a router exposing register, login, refresh and logout.

    ``register`` and ``login`` are only mounted when *identity* is given.
    The gateway must list them, and ``refresh``, as anonymous paths so that
    they are rate limited but not authenticated; ``logout`` requires a valid
    access token.
    """
    router = APIRouter(prefix=prefix, tags=["auth"])

    if identity is not None:

        # Plain def: bcrypt hashing runs in the threadpool, off the event loop.
        @router.post("/register", status_code=201)
        def register(body: PasswordCredentials) -> dict[str, object]:
            try:
                subject = identity.register(body.email, body.password)
            except ValueError as exc:
                status = 409 if "already exists" in str(exc) else 400
                raise HTTPException(status_code=status, detail=str(exc)) from exc
            return {"subject": subject, **tokens.issue_pair(subject).to_response()}

        @router.post("/login")
        def login(body: PasswordCredentials) -> dict[str, object]:
            subject = identity.login(body.email, body.password)
            if subject is None:
                raise HTTPException(status_code=401, detail="Invalid email or password")
            return tokens.issue_pair(subject).to_response()

    @router.post("/refresh")
    async def refresh(body: RefreshRequest) -> dict[str, object]:
        try:
            pair = await tokens.refresh(body.refresh_token)
        except AuthenticationError as exc:
            logger.warning(
                "Refresh rejected: %s",
                type(exc).__name__,
                extra={"event": "token_validation_failed", "reason": type(exc).__name__, "op": "refresh"},
            )
            raise HTTPException(status_code=401, detail="Invalid refresh token") from exc
        except StoreUnavailable as exc:
            raise _unavailable(exc, "refresh") from exc
        return pair.to_response()

    @router.post("/logout")
    async def logout(request: Request, body: LogoutRequest | None = None) -> dict[str, str]:
        access_token = bearer_token(request)
        if not access_token:
            raise HTTPException(status_code=401, detail="Authentication required")
        body = body or LogoutRequest()
        try:
            await tokens.logout(access_token, body.refresh_token)
            if body.everywhere:
                claims = tokens.codec.verify(access_token)
                await tokens.logout_everywhere(claims.sub)
        except AuthenticationError as exc:
            raise HTTPException(status_code=401, detail="Authentication required") from exc
        except StoreUnavailable as exc:
            raise _unavailable(exc, "logout") from exc
        return {"status": "logged_out"}

    return router

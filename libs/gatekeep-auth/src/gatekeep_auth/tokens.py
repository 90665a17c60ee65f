"""Token lifecycle: pair issuance, refresh rotation and logout."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from gatekeep_auth.codec import Claims, Credential, TokenClass, TokenCodec
from gatekeep_auth.config import StoreConfig, TokenConfig
from gatekeep_auth.errors import MalformedClaims, Revoked
from gatekeep_auth.gate import AuthenticationGate
from gatekeep_auth.resilience import call_store

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class TokenPair:
    access: Credential
    refresh: Credential

    def to_response(self) -> dict[str, object]:
        return {
            "access_token": self.access.token,
            "refresh_token": self.refresh.token,
            "token_type": "bearer",
            "expires_in": int(self.access.claims.exp - self.access.claims.iat),
        }


class TokenService:
    """Issues, rotates and revokes credentials.

    Refresh consumes the presented refresh token and revokes the access
    token minted with it *before* anything new is signed, so the old and
    new pairs are never valid at the same time. If the store cannot record
    either revocation the refresh fails and no credentials are returned.
    """

    def __init__(
        self,
        codec: TokenCodec,
        gate: AuthenticationGate,
        config: TokenConfig,
        store_config: StoreConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.codec = codec
        self.gate = gate
        self.store = gate.store
        self.config = config
        self.store_config = store_config or gate.store_config
        self._clock = clock

    async def _call(self, operation: Callable[[], Awaitable[T]], what: str) -> T:
        return await call_store(
            operation,
            timeout=self.store_config.operation_timeout_seconds,
            retries=self.store_config.retry_attempts,
            what=what,
        )

    def issue_pair(self, subject: str) -> TokenPair:
        access = self.codec.issue(subject, TokenClass.ACCESS, self.config.access_ttl_seconds)
        refresh = self.codec.issue(
            subject,
            TokenClass.REFRESH,
            self.config.refresh_ttl_seconds,
            extra_claims={"aid": access.jti, "aex": access.claims.exp},
        )
        return TokenPair(access=access, refresh=refresh)

    def _revocation_ttl(self, expires_at: float) -> float:
        # verify() still accepts a token for leeway_seconds past its exp.
        return expires_at - self._clock() + self.codec.leeway_seconds

    async def _revoke(self, claims: Claims) -> bool:
        ttl = self._revocation_ttl(claims.exp)
        return await self._call(lambda: self.store.revoke(claims.jti, ttl), "revoke")

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange *refresh_token* for a new pair.

        Raises:
            TokenError: The refresh token does not verify as a refresh token.
            Revoked: It was revoked or has already been used.
            StoreUnavailable: A revocation could not be checked or recorded.
        """
        claims = self.codec.verify(refresh_token, TokenClass.REFRESH)
        await self.gate.check_revocation(claims)

        # Not retried: a retry after a write that landed would read as reuse.
        ttl = self._revocation_ttl(claims.exp)
        consumed = await call_store(
            lambda: self.store.revoke(claims.jti, ttl),
            timeout=self.store_config.operation_timeout_seconds,
            what="revoke",
        )
        if not consumed:
            logger.warning(
                "Refresh token reuse detected: user_id=%s jti=%s",
                claims.sub,
                claims.jti,
                extra={"event": "token_revoked", "user_id": claims.sub, "jti": claims.jti, "reason": "reuse"},
            )
            raise Revoked("Refresh token has already been used")

        if claims.aid:
            # aex is the paired access token's own exp; the refresh exp bounds it otherwise.
            access_ttl = self._revocation_ttl(claims.aex if claims.aex is not None else claims.exp)
            await self._call(lambda: self.store.revoke(claims.aid, access_ttl), "revoke")

        pair = self.issue_pair(claims.sub)
        logger.info(
            "Token refreshed: user_id=%s",
            claims.sub,
            extra={"event": "token_refreshed", "user_id": claims.sub},
        )
        return pair

    async def logout(self, access_token: str, refresh_token: str | None = None) -> None:
        """Revoke the presented credentials for their remaining lifetimes."""
        access = self.codec.verify(access_token, TokenClass.ACCESS)
        refresh = self.codec.verify(refresh_token, TokenClass.REFRESH) if refresh_token else None
        if refresh is not None and refresh.sub != access.sub:
            raise MalformedClaims("refresh token belongs to a different subject")

        await self._revoke(access)
        if refresh is not None:
            await self._revoke(refresh)
        logger.info(
            "Logout: user_id=%s",
            access.sub,
            extra={"event": "logout", "user_id": access.sub, "scope": "session"},
        )

    async def logout_everywhere(self, subject: str) -> None:
        """Revoke every credential of *subject* issued up to now."""
        cutoff = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        # Covers the longest-lived credential issued before the cutoff.
        ttl = self.config.refresh_ttl_seconds + self.codec.leeway_seconds
        await self._call(
            lambda: self.store.revoke_subject(subject, cutoff, ttl),
            "revoke_subject",
        )
        logger.info(
            "Logout everywhere: user_id=%s",
            subject,
            extra={"event": "logout", "user_id": subject, "scope": "all"},
        )

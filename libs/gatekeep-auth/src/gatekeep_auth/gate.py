"""Single credential check shared by the HTTP and WebSocket entry points."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from gatekeep_auth.codec import Claims, TokenClass, TokenCodec
from gatekeep_auth.config import StoreConfig
from gatekeep_auth.context import Identity
from gatekeep_auth.errors import Expired, Revoked, StoreUnavailable, TokenError
from gatekeep_auth.resilience import call_store
from gatekeep_auth.revocation import TokenRevocationStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RejectReason(str, Enum):
    MISSING = "missing"
    INVALID = "invalid"
    EXPIRED = "expired"
    REVOKED = "revoked"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class AuthOutcome:
    """Either a verified :class:`Identity` or the reason it was rejected."""

    identity: Identity | None = None
    reason: RejectReason | None = None
    detail: str = ""

    @property
    def accepted(self) -> bool:
        return self.identity is not None

    @classmethod
    def accept(cls, identity: Identity) -> AuthOutcome:
        return cls(identity=identity)

    @classmethod
    def reject(cls, reason: RejectReason, detail: str = "") -> AuthOutcome:
        return cls(reason=reason, detail=detail)


class AuthenticationGate:
    """Answers "is this credential valid right now?".

    Cryptographic verification comes first and never touches the store.
    The revocation lookup that follows is bounded by the store timeout and
    fails closed: a store that cannot answer yields ``UNAVAILABLE``, never an
    identity.
    """

    def __init__(
        self,
        codec: TokenCodec,
        store: TokenRevocationStore,
        store_config: StoreConfig | None = None,
    ) -> None:
        self.codec = codec
        self.store = store
        self.store_config = store_config or StoreConfig()

    async def _call(self, operation: Callable[[], Awaitable[T]], what: str) -> T:
        return await call_store(
            operation,
            timeout=self.store_config.operation_timeout_seconds,
            retries=self.store_config.retry_attempts,
            what=what,
        )

    async def check_revocation(self, claims: Claims) -> None:
        """Raise :class:`Revoked` if *claims* were revoked by jti or subject cutoff.

        Raises:
            Revoked: The credential is revoked.
            StoreUnavailable: The store did not answer within its bounds.
        """
        if await self._call(lambda: self.store.is_revoked(claims.jti), "is_revoked"):
            raise Revoked("Token has been revoked")
        cutoff = await self._call(lambda: self.store.subject_revoked_before(claims.sub), "subject_revoked_before")
        if cutoff is not None and claims.iat <= cutoff.timestamp():
            raise Revoked("Session invalidated")

    async def authenticate(
        self,
        raw_token: str | None,
        expected_class: TokenClass = TokenClass.ACCESS,
    ) -> AuthOutcome:
        if not raw_token:
            return AuthOutcome.reject(RejectReason.MISSING, "No credential presented")

        try:
            claims = self.codec.verify(raw_token, expected_class)
        except Expired:
            logger.info(
                "Token validation failed: expired",
                extra={"event": "token_validation_failed", "reason": "expired"},
            )
            return AuthOutcome.reject(RejectReason.EXPIRED, "Token has expired")
        except TokenError as exc:
            logger.info(
                "Token validation failed: %s (%s)",
                type(exc).__name__,
                exc,
                extra={"event": "token_validation_failed", "reason": type(exc).__name__},
            )
            return AuthOutcome.reject(RejectReason.INVALID, "Invalid token")

        try:
            await self.check_revocation(claims)
        except Revoked as exc:
            logger.warning(
                "Revoked token presented: user_id=%s jti=%s reason=%s",
                claims.sub,
                claims.jti,
                exc,
                extra={"event": "token_revoked", "user_id": claims.sub, "jti": claims.jti},
            )
            return AuthOutcome.reject(RejectReason.REVOKED, str(exc))
        except StoreUnavailable as exc:
            logger.error(
                "Revocation store unavailable, rejecting: user_id=%s error=%s",
                claims.sub,
                exc,
                extra={"event": "store_unavailable", "store": "revocation", "user_id": claims.sub},
            )
            return AuthOutcome.reject(RejectReason.UNAVAILABLE, "Credential status could not be confirmed")

        return AuthOutcome.accept(Identity.from_claims(claims))

"""Stateless JWT issue/verify primitive with key rotation support."""

from __future__ import annotations

import logging
import math
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Sequence

import jwt
from pydantic import BaseModel, Field, ValidationError

from gatekeep_auth.config import SigningKey, TokenConfig
from gatekeep_auth.errors import ConfigError, Expired, MalformedClaims, SignatureInvalid

logger = logging.getLogger(__name__)

# Claims every credential must carry.
_REQUIRED_CLAIMS = ("sub", "iss", "iat", "exp", "jti", "typ")

# Claims the codec sets itself; callers cannot override them via extra_claims.
_RESERVED_CLAIMS = frozenset({*_REQUIRED_CLAIMS, "nbf", "aud"})


class TokenClass(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class Claims(BaseModel):
    """Verified claim set of a credential."""

    model_config = {"frozen": True, "extra": "allow"}

    sub: str = Field(min_length=1)
    iss: str
    iat: float
    exp: float
    jti: str = Field(min_length=1)
    typ: TokenClass
    aid: str | None = None
    aex: float | None = None

    @property
    def subject(self) -> str:
        return self.sub

    @property
    def token_class(self) -> TokenClass:
        return self.typ

    @property
    def issued_at(self) -> datetime:
        return datetime.fromtimestamp(self.iat, tz=timezone.utc)

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)

    def remaining_seconds(self, now: float | None = None) -> float:
        """Seconds until natural expiry (negative once expired)."""
        return self.exp - (time.time() if now is None else now)


@dataclass(frozen=True)
class Credential:
    """A freshly issued, signed token together with its key claims."""

    token: str
    claims: Claims

    @property
    def subject(self) -> str:
        return self.claims.sub

    @property
    def jti(self) -> str:
        return self.claims.jti

    @property
    def token_class(self) -> TokenClass:
        return self.claims.typ

    @property
    def expires_at(self) -> datetime:
        return self.claims.expires_at

    def __repr__(self) -> str:
        return f"Credential(subject={self.subject!r}, class={self.token_class.value!r}, jti={self.jti!r})"


class TokenCodec:
    """Signs and verifies credentials.

    Key material is read once at construction and never mutated. The first
    key signs; every key verifies, which gives a rotation overlap window.
    Verification never touches a store, so it cannot fail because
    infrastructure is degraded.
    """

    def __init__(
        self,
        keys: Sequence[SigningKey],
        *,
        issuer: str,
        algorithm: str = "HS256",
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        usable = tuple(k for k in keys if k.secret)
        if not usable:
            raise ConfigError("TokenCodec requires at least one non-empty signing key.")
        self._keys = usable
        self._by_kid = {k.kid: k for k in usable}
        self._issuer = issuer
        self._algorithm = algorithm
        self._leeway = leeway_seconds
        self._clock = clock

    @classmethod
    def from_config(cls, config: TokenConfig, clock: Callable[[], float] = time.time) -> TokenCodec:
        return cls(
            config.signing_keys,
            issuer=config.issuer,
            algorithm=config.algorithm,
            leeway_seconds=config.leeway_seconds,
            clock=clock,
        )

    @property
    def issuer(self) -> str:
        return self._issuer

    @property
    def active_kid(self) -> str:
        return self._keys[0].kid

    @property
    def leeway_seconds(self) -> int:
        return self._leeway

    def issue(
        self,
        subject: str,
        token_class: TokenClass | str,
        ttl_seconds: float,
        *,
        extra_claims: dict[str, Any] | None = None,
    ) -> Credential:
        """Construct and sign a credential for *subject*.

        Raises:
            ValueError: For an empty subject, an unknown token class, or a
                non-positive ttl.
        """
        token_class = TokenClass(token_class)
        if not isinstance(subject, str) or not subject.strip():
            raise ValueError("subject must be a non-empty string")
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")

        now = self._clock()
        payload: dict[str, Any] = {k: v for k, v in (extra_claims or {}).items() if k not in _RESERVED_CLAIMS}
        payload.update(
            {
                "sub": subject,
                "iss": self._issuer,
                "iat": now,
                "exp": math.ceil(now + ttl_seconds),
                "jti": uuid.uuid4().hex,
                "typ": token_class.value,
            }
        )
        key = self._keys[0]
        token = jwt.encode(payload, key.secret, algorithm=self._algorithm, headers={"kid": key.kid})
        logger.debug(
            "Token issued: sub=%s class=%s kid=%s",
            subject,
            token_class.value,
            key.kid,
            extra={"event": "token_issued", "user_id": subject, "token_class": token_class.value},
        )
        return Credential(token=token, claims=Claims.model_validate(payload))

    def _candidate_keys(self, kid: Any) -> tuple[SigningKey, ...]:
        if kid is None:
            return self._keys
        key = self._by_kid.get(kid) if isinstance(kid, str) else None
        return (key,) if key is not None else ()

    def verify(self, token: str, expected_class: TokenClass | None = None) -> Claims:
        """Check signature, issuer, expiry and claim shape of *token*.

        Revocation is not checked here; see
        :class:`~gatekeep_auth.gate.AuthenticationGate`.

        Raises:
            SignatureInvalid: No configured key verifies the signature.
            Expired: The token is past its ``exp``.
            MalformedClaims: The token is not a JWT, has missing or ill-typed
                claims, a foreign issuer, or the wrong token class.
        """
        if not isinstance(token, str) or not token:
            raise MalformedClaims("empty token")
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise MalformedClaims("token is not a well-formed JWT") from exc
        if header.get("alg") != self._algorithm:
            raise SignatureInvalid(f"unexpected signing algorithm: {header.get('alg')!r}")

        payload: dict[str, Any] | None = None
        for key in self._candidate_keys(header.get("kid")):
            try:
                payload = jwt.decode(
                    token,
                    key.secret,
                    algorithms=[self._algorithm],
                    issuer=self._issuer,
                    leeway=self._leeway,
                    options={"require": list(_REQUIRED_CLAIMS)},
                )
                break
            except jwt.InvalidSignatureError:
                continue
            except jwt.ExpiredSignatureError as exc:
                raise Expired("token has expired") from exc
            except jwt.PyJWTError as exc:
                raise MalformedClaims(f"invalid claims: {type(exc).__name__}") from exc
        if payload is None:
            raise SignatureInvalid("signature does not match any configured key")

        try:
            claims = Claims.model_validate(payload)
        except ValidationError as exc:
            raise MalformedClaims(f"claim shape rejected: {exc.error_count()} error(s)") from exc
        if claims.exp <= claims.iat:
            raise MalformedClaims("exp must be later than iat")
        if expected_class is not None and claims.typ is not expected_class:
            raise MalformedClaims(f"expected a {expected_class.value} token, got {claims.typ.value}")
        return claims

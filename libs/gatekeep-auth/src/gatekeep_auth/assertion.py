"""Gateway-minted identity assertions and their downstream verification.

Downstream services never read identity from plain headers. The gateway
signs a short-lived :class:`InternalAssertion` for every authenticated
request; each service re-verifies signature, audience, issuer and freshness
before trusting the subject it names.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
import uuid
from typing import Any, Callable

import jwt
from pydantic import BaseModel, Field, ValidationError

from gatekeep_auth.codec import TokenClass
from gatekeep_auth.config import AssertionConfig
from gatekeep_auth.context import Identity
from gatekeep_auth.errors import AssertionInvalid

logger = logging.getLogger(__name__)

_ALGORITHM = "HS256"
_REQUIRED = ["sub", "dig", "iat", "exp", "jti", "iss", "aud"]


def claims_digest(claims: dict[str, Any]) -> str:
    """SHA-256 over the canonical JSON form of the verified client claims."""
    canonical = json.dumps(claims, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


class InternalAssertion(BaseModel):
    """Typed payload of an assertion header."""

    model_config = {"frozen": True, "extra": "ignore"}

    sub: str = Field(min_length=1)
    dig: str = Field(min_length=64, max_length=64)
    iat: float
    exp: float
    jti: str = Field(min_length=1)
    iss: str
    aud: str
    cls: TokenClass = TokenClass.ACCESS
    tjti: str = ""

    def to_identity(self) -> Identity:
        return Identity(
            subject=self.sub,
            token_class=self.cls,
            jti=self.tjti,
            source="assertion",
            claims={"dig": self.dig, "iat": self.iat, "exp": self.exp},
        )


class AssertionSigner:
    """Mints assertions at the gateway."""

    def __init__(self, config: AssertionConfig, clock: Callable[[], float] = time.time) -> None:
        self.config = config
        self._clock = clock

    @property
    def header_name(self) -> str:
        return self.config.header_name

    def mint(self, identity: Identity) -> str:
        if not identity.is_authenticated:
            raise ValueError("cannot mint an assertion for an anonymous identity")
        now = self._clock()
        payload = {
            "sub": identity.subject,
            "dig": claims_digest(identity.claims),
            "iat": now,
            "exp": now + self.config.ttl_seconds,
            "jti": uuid.uuid4().hex,
            "iss": self.config.issuer,
            "aud": self.config.audience,
            "cls": identity.token_class.value,
            "tjti": identity.jti,
        }
        return jwt.encode(payload, self.config.secret, algorithm=_ALGORITHM)


class AssertionVerifier:
    """Verifies assertions inside a downstream service.

    Expiry and issued-at are checked against the injected clock with
    ``clock_skew_seconds`` of tolerance in either direction, so an assertion
    older than ``ttl_seconds + clock_skew_seconds`` is never accepted.
    """

    def __init__(self, config: AssertionConfig, clock: Callable[[], float] = time.time) -> None:
        self.config = config
        self._clock = clock

    def verify(self, token: str | None) -> Identity:
        """Return the identity named by *token*.

        Raises:
            AssertionInvalid: Missing, forged, foreign, stale or malformed.
        """
        if not token:
            raise AssertionInvalid("missing internal assertion")
        try:
            payload = jwt.decode(
                token,
                self.config.secret,
                algorithms=[_ALGORITHM],
                audience=self.config.audience,
                issuer=self.config.issuer,
                options={"verify_exp": False, "verify_iat": False, "require": _REQUIRED},
            )
        except jwt.InvalidSignatureError as exc:
            raise AssertionInvalid("assertion signature mismatch") from exc
        except jwt.PyJWTError as exc:
            raise AssertionInvalid(f"assertion rejected: {type(exc).__name__}") from exc

        try:
            assertion = InternalAssertion.model_validate(payload)
        except ValidationError as exc:
            raise AssertionInvalid(f"assertion shape rejected: {exc.error_count()} error(s)") from exc

        now = self._clock()
        skew = self.config.clock_skew_seconds
        if assertion.iat > now + skew:
            raise AssertionInvalid("assertion issued in the future")
        if assertion.exp < now - skew:
            raise AssertionInvalid("assertion has expired")
        if now - assertion.iat > self.config.ttl_seconds + skew:
            raise AssertionInvalid("assertion is stale")
        return assertion.to_identity()

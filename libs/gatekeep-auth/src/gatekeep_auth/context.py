"""Verified identity model attached to requests and WebSocket connections."""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, Field, model_serializer

from gatekeep_auth.codec import Claims, TokenClass

_SENSITIVE_PATTERN = re.compile(
    r"(password|secret|token|api_key|credential)",
    re.IGNORECASE,
)
_REDACTED = "***REDACTED***"

# Claims that are safe to carry alongside an identity.
_SAFE_CLAIMS = frozenset({"sub", "iss", "iat", "exp", "jti", "typ", "aid", "aex", "dig"})


class Identity(BaseModel):
    """An identity that has passed verification.

    ``source`` records which verifier produced it: ``bearer`` for the
    gateway's client-token check, ``assertion`` for a downstream service's
    check of the gateway-minted assertion.
    """

    model_config = {"frozen": True}

    subject: str
    token_class: TokenClass = TokenClass.ACCESS
    jti: str = ""
    source: str = "bearer"
    claims: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_claims(cls, claims: Claims) -> Identity:
        data = claims.model_dump(mode="json")
        return cls(
            subject=claims.sub,
            token_class=claims.typ,
            jti=claims.jti,
            source="bearer",
            claims={k: v for k, v in data.items() if k in _SAFE_CLAIMS},
        )

    @property
    def is_authenticated(self) -> bool:
        return bool(self.subject)

    @staticmethod
    def _redact_dict(d: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of *d* with sensitive keys masked."""
        result: dict[str, Any] = {}
        for key, value in d.items():
            if _SENSITIVE_PATTERN.search(key):
                result[key] = _REDACTED
            elif isinstance(value, dict):
                result[key] = Identity._redact_dict(value)
            else:
                result[key] = value
        return result

    @model_serializer
    def _serialize(self) -> dict[str, Any]:
        return {
            "subject": self.subject,
            "token_class": self.token_class.value,
            "jti": self.jti,
            "source": self.source,
            "claims": self._redact_dict(self.claims),
        }

    def __repr__(self) -> str:
        return f"Identity(subject={self.subject!r}, source={self.source!r}, class={self.token_class.value!r})"


ANONYMOUS = Identity(subject="", source="anonymous")

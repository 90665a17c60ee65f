"""Gatekeep configuration loaded from .gatekeep/config.json.

Secret values (signing keys, the assertion secret, the Redis URL) support an
``$env:VAR_NAME`` indirection so they never have to be written to disk.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from gatekeep_auth.errors import ConfigError
from gatekeep_auth.rate_limiter import EndpointClass, RateLimitConfig

logger = logging.getLogger(__name__)

_ENV_PREFIX = "$env:"
_HMAC_ALGORITHMS = {"HS256", "HS384", "HS512"}
_MIN_SECRET_BYTES = 32

DEFAULT_CONFIG_PATH = ".gatekeep/config.json"


def resolve_secret(value: str) -> str:
    """Resolve a ``$env:VAR`` reference, returning ``""`` when the variable is unset."""
    if value.startswith(_ENV_PREFIX):
        return os.environ.get(value[len(_ENV_PREFIX) :], "")
    return value


def _check_secret(name: str, secret: str) -> None:
    if not secret:
        raise ConfigError(f"{name} must not be empty; there is no safe default.")
    if len(secret.encode()) < _MIN_SECRET_BYTES:
        raise ConfigError(f"{name} must be at least {_MIN_SECRET_BYTES} bytes long.")


class SigningKey(BaseModel):
    """One HMAC signing key, identified in token headers by ``kid``."""

    model_config = {"frozen": True}

    kid: str = Field(min_length=1)
    secret: str = Field(repr=False)

    @field_validator("secret")
    @classmethod
    def _resolve(cls, value: str) -> str:
        return resolve_secret(value)


class TokenConfig(BaseModel):
    """JWT issuance and validation settings.

    ``signing_keys`` is ordered newest first: the first key signs, every key
    verifies. Keep the retiring key in the list for one access-token lifetime
    after rotating.
    """

    model_config = {"frozen": True}

    algorithm: str = "HS256"
    issuer: str = "gatekeep"
    signing_keys: list[SigningKey] = Field(default_factory=list, repr=False)
    access_ttl_seconds: int = Field(default=900, ge=1)
    refresh_ttl_seconds: int = Field(default=7 * 24 * 3600, ge=1)
    leeway_seconds: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_keys(self) -> TokenConfig:
        if self.algorithm not in _HMAC_ALGORITHMS:
            raise ConfigError(f"Unsupported token algorithm '{self.algorithm}'; use one of {sorted(_HMAC_ALGORITHMS)}.")
        if not self.signing_keys:
            raise ConfigError("tokens.signing_keys must contain at least one key.")
        kids = [key.kid for key in self.signing_keys]
        if len(set(kids)) != len(kids):
            raise ConfigError(f"tokens.signing_keys has duplicate kid values: {kids}")
        for key in self.signing_keys:
            _check_secret(f"Signing key '{key.kid}'", key.secret)
        if self.refresh_ttl_seconds < self.access_ttl_seconds:
            raise ConfigError("tokens.refresh_ttl_seconds must not be shorter than access_ttl_seconds.")
        return self


class AssertionConfig(BaseModel):
    """Gateway-to-downstream identity assertion settings.

    Shared by the gateway (which mints assertions) and every downstream
    service (which verifies them). ``stripped_headers`` are client-supplied
    identity headers removed at the gateway.
    """

    model_config = {"frozen": True}

    secret: str = Field(default="", repr=False)
    header_name: str = "X-Internal-Assertion"
    issuer: str = "gatekeep-gateway"
    audience: str = "gatekeep-internal"
    ttl_seconds: int = Field(default=30, ge=1)
    clock_skew_seconds: int = Field(default=5, ge=0, le=60)
    stripped_headers: list[str] = Field(
        default_factory=lambda: ["X-User-Id", "X-User-Roles", "X-Authenticated-User"]
    )

    @field_validator("secret")
    @classmethod
    def _resolve(cls, value: str) -> str:
        return resolve_secret(value)

    @model_validator(mode="after")
    def _check_secret(self) -> AssertionConfig:
        _check_secret("assertion.secret", self.secret)
        return self

    def identity_headers(self) -> frozenset[str]:
        """Lower-cased header names that only the gateway may set."""
        return frozenset(h.lower() for h in [self.header_name, *self.stripped_headers])


class StoreConfig(BaseModel):
    """Connection settings for the revocation and rate-limit store.

    An empty ``redis_url`` selects the in-memory stores, which are only
    correct for a single gateway process.
    """

    redis_url: str = Field(default="", repr=False)
    key_prefix: str = "gatekeep:"
    operation_timeout_seconds: float = Field(default=0.5, gt=0)
    retry_attempts: int = Field(default=1, ge=0, le=3)

    @field_validator("redis_url")
    @classmethod
    def _resolve(cls, value: str) -> str:
        return resolve_secret(value)


def _default_endpoint_classes() -> dict[str, EndpointClass]:
    return {
        "/auth/login": EndpointClass.LOGIN,
        "/auth/register": EndpointClass.REGISTER,
        "/auth/refresh": EndpointClass.REFRESH,
    }


class GatewayConfig(BaseModel):
    """Routing and admission settings for the gateway.

    ``public_paths`` skip rate limiting and authentication entirely;
    ``anonymous_paths`` are rate limited but not authenticated. Both match by
    exact path. ``endpoint_classes`` and ``upstreams`` match by path prefix.
    Requests slower than ``slow_request_ms`` are logged as a warning.
    """

    public_paths: list[str] = Field(default_factory=lambda: ["/health"])
    anonymous_paths: list[str] = Field(default_factory=lambda: ["/auth/login", "/auth/register", "/auth/refresh"])
    endpoint_classes: dict[str, EndpointClass] = Field(default_factory=_default_endpoint_classes)
    upstreams: dict[str, str] = Field(default_factory=dict)
    forward_timeout_seconds: float = Field(default=10.0, gt=0)
    retry_budget: int = Field(default=1, ge=0, le=3)
    trust_forwarded_for: bool = False
    rate_limit_key: Literal["auto", "ip"] = "auto"
    slow_request_ms: int = Field(default=500, ge=0)

    @field_validator("upstreams")
    @classmethod
    def _check_upstreams(cls, value: dict[str, str]) -> dict[str, str]:
        for prefix, url in value.items():
            if not prefix.startswith("/"):
                raise ValueError(f"upstream prefix must start with '/', got: '{prefix}'")
            parsed = urlparse(url)
            if parsed.scheme not in ("http", "https") or not parsed.hostname:
                raise ValueError(f"upstream for '{prefix}' must be an HTTP(S) URL, got: '{url}'")
        return value


class IdentityConfig(BaseModel):
    """Password login settings."""

    enabled: bool = True
    min_password_length: int = Field(default=8, ge=8)


class GatekeepConfig(BaseModel):
    """Top-level configuration for the gateway and its security core."""

    tokens: TokenConfig = Field(default_factory=TokenConfig)
    assertion: AssertionConfig = Field(default_factory=AssertionConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GatekeepConfig:
        """Validate *data*, reporting every problem as :class:`ConfigError`."""
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"Invalid gatekeep configuration: {exc}") from exc

    @classmethod
    def from_file(cls, path: str | Path = DEFAULT_CONFIG_PATH) -> GatekeepConfig:
        """Load config from a JSON file.

        Unlike optional settings files, a missing file is fatal: signing keys
        have no default.
        """
        p = Path(path)
        if not p.exists():
            raise ConfigError(f"Config file not found: {p}")
        try:
            data: dict[str, Any] = json.loads(p.read_text())
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Config file {p} is not valid JSON: {exc}") from exc
        logger.info("Loaded gatekeep config from %s", p)
        return cls.from_dict(data)

    @classmethod
    def from_env(cls) -> GatekeepConfig:
        """Load config from the file named by ``GATEKEEP_CONFIG`` (default ``.gatekeep/config.json``)."""
        return cls.from_file(os.environ.get("GATEKEEP_CONFIG", DEFAULT_CONFIG_PATH))

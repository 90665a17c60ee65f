"""Error types for the gatekeep security core."""


class GatekeepError(Exception):
    """Base class for all gatekeep errors."""


class ConfigError(GatekeepError):
    """Raised at startup when required configuration (e.g. signing keys) is missing or invalid."""


class AuthenticationError(GatekeepError):
    """Raised when a credential cannot be accepted for the current request."""


class TokenError(AuthenticationError):
    """Base class for cryptographic and claim-shape failures of a JWT."""


class SignatureInvalid(TokenError):
    """The token signature does not match any configured key."""


class Expired(TokenError):
    """The token ``exp`` claim is in the past."""


class MalformedClaims(TokenError):
    """The token is structurally invalid or carries missing/ill-typed claims."""


class AssertionInvalid(AuthenticationError):
    """An internal identity assertion failed signature or freshness checks."""


class StoreUnavailable(GatekeepError):
    """The revocation or rate-limit backing store could not be reached in time."""


class Revoked(AuthenticationError):
    """The credential was revoked, individually or by a per-subject cutoff."""

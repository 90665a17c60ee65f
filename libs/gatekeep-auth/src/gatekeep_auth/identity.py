"""Password registration and login backed by a :class:`UserStore`."""

from __future__ import annotations

import logging
import re
import secrets

import bcrypt

from gatekeep_auth.config import IdentityConfig
from gatekeep_auth.user_store import InMemoryUserStore, UserRecord, UserStore

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# bcrypt only reads the first 72 bytes of a password.
_MAX_PASSWORD_BYTES = 72


class IdentityService:
    """Local accounts with bcrypt password hashes.

    Returns subject identifiers only; credential issuance is the job of
    :class:`~gatekeep_auth.tokens.TokenService`.
    """

    # Missing-user logins still run bcrypt against this hash so that they
    # take as long as a wrong password.
    _DUMMY_HASH: str = bcrypt.hashpw(b"dummy-password", bcrypt.gensalt()).decode()

    def __init__(self, config: IdentityConfig | None = None, user_store: UserStore | None = None) -> None:
        self.config = config or IdentityConfig()
        self._store: UserStore = user_store or InMemoryUserStore()

    @staticmethod
    def normalize_email(email: str) -> str:
        return email.strip().lower()

    def hash_password(self, password: str) -> str:
        return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()

    def verify_password(self, plain: str, hashed: str) -> bool:
        return bcrypt.checkpw(plain.encode()[:_MAX_PASSWORD_BYTES], hashed.encode())

    def _validate(self, email: str, password: str) -> None:
        if not _EMAIL_RE.match(email):
            raise ValueError("Invalid email address")
        if len(password) < self.config.min_password_length:
            raise ValueError(f"Password must be at least {self.config.min_password_length} characters")
        if len(password.encode()) > _MAX_PASSWORD_BYTES:
            raise ValueError(f"Password must be at most {_MAX_PASSWORD_BYTES} bytes")

    def register(self, email: str, password: str) -> str:
        """Create an account and return its subject identifier.

        Raises:
            ValueError: Invalid email, password policy violation, or an
                existing account.
        """
        email = self.normalize_email(email)
        self._validate(email, password)
        if self._store.get(email) is not None:
            raise ValueError("User already exists")
        record = UserRecord(subject=secrets.token_hex(16), email=email, password_hash=self.hash_password(password))
        if not self._store.add(record):
            raise ValueError("User already exists")
        subject = record.subject
        logger.info(
            "User registered: user_id=%s",
            subject,
            extra={"event": "user_registered", "user_id": subject},
        )
        return subject

    def login(self, email: str, password: str) -> str | None:
        """Return the subject for valid credentials, else ``None``."""
        email = self.normalize_email(email)
        user = self._store.get(email)
        password_hash = user.password_hash if user else self._DUMMY_HASH
        password_valid = self.verify_password(password, password_hash)

        if not user or not password_valid:
            logger.warning(
                "Login failed: reason=%s",
                "unknown_email" if not user else "bad_password",
                extra={"event": "login_failed", "reason": "unknown_email" if not user else "bad_password"},
            )
            return None

        logger.info(
            "Login successful: user_id=%s",
            user.subject,
            extra={"event": "login_success", "user_id": user.subject},
        )
        return user.subject

"""Account records for password login and where they are kept."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class UserRecord(BaseModel):
    """One local account. ``email`` is stored normalized."""

    model_config = {"frozen": True}

    subject: str
    email: str
    password_hash: str = Field(repr=False)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


@runtime_checkable
class UserStore(Protocol):
    """Lookup and insert for account records.

    ``add`` must be a single check-and-insert so that two concurrent
    registrations of one email cannot both succeed.
    """

    def get(self, email: str) -> UserRecord | None: ...

    def add(self, record: UserRecord) -> bool:
        """Insert *record*; return ``False`` if its email is already taken."""
        ...


class InMemoryUserStore:
    """Process-local accounts for development and tests.

    .. warning::
        Accounts are lost on restart and are not shared between gateway
        instances.
    """

    def __init__(self) -> None:
        logger.warning(
            "IdentityService is using the in-memory user store; accounts will be lost on restart.",
            extra={"event": "in_memory_store", "store": "users"},
        )
        self._records: dict[str, UserRecord] = {}
        self._lock = threading.Lock()

    def get(self, email: str) -> UserRecord | None:
        return self._records.get(email)

    def add(self, record: UserRecord) -> bool:
        with self._lock:
            if record.email in self._records:
                return False
            self._records[record.email] = record
            return True

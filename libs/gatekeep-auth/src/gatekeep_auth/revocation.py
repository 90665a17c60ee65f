"""Token revocation store protocol and in-memory implementation.

Every entry carries a TTL equal to the remaining lifetime of what it
revokes, so the store never grows past the set of still-live credentials.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class TokenRevocationStore(Protocol):
    """Protocol for pluggable token revocation backends.

    All methods are async to support network-backed stores; any failure to
    reach the store must surface as
    :class:`~gatekeep_auth.errors.StoreUnavailable` so that callers can fail
    closed.

    The store tracks two kinds of revocation:

    1. **Per-token revocation**: a single credential identified by its
       ``jti``, kept for the credential's remaining lifetime.
    2. **Per-subject revocation**: every credential of a subject issued at
       or before a cutoff ("log out everywhere").
    """

    async def revoke(self, jti: str, ttl_seconds: float) -> bool:
        """Mark *jti* revoked for *ttl_seconds*.

        Idempotent. A repeated call never shortens an existing entry: the
        entry keeps ``max(remaining, ttl_seconds)``. A non-positive ttl is a
        no-op because the token has already expired.

        Returns:
            ``True`` if this call created the entry, ``False`` if it existed.
        """
        ...

    async def is_revoked(self, jti: str) -> bool:
        """Return ``True`` while a revocation entry for *jti* is live."""
        ...

    async def revoke_subject(self, subject: str, before: datetime, ttl_seconds: float) -> None:
        """Revoke every credential of *subject* issued at or before *before*.

        A later cutoff replaces an earlier one; an earlier one is ignored.
        """
        ...

    async def subject_revoked_before(self, subject: str) -> datetime | None:
        """Return the live cutoff for *subject*, or ``None``."""
        ...


class InMemoryRevocationStore:
    """Non-persistent, in-memory token revocation store for development and testing.

    Each operation runs without suspending, so it is atomic with respect to
    other tasks on the same event loop. A lazy cleanup pass evicts expired
    entries to bound memory.

    .. warning::
        All revocation state is lost on process restart and is not shared
        between gateway instances. Use
        :class:`~gatekeep_auth.redis_store.RedisRevocationStore` in production.

    Args:
        cleanup_interval_seconds: Minimum seconds between lazy cleanup passes.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(self, cleanup_interval_seconds: int = 60, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        # jti -> monotonic expiry
        self._revoked_tokens: dict[str, float] = {}
        # subject -> (cutoff, monotonic expiry)
        self._subject_cutoffs: dict[str, tuple[datetime, float]] = {}
        self._cleanup_interval = cleanup_interval_seconds
        self._last_cleanup: float = clock()

    def _maybe_cleanup(self, now: float) -> None:
        """Evict expired entries if the cleanup interval has elapsed."""
        if now - self._last_cleanup < self._cleanup_interval:
            return
        self._last_cleanup = now

        expired = [jti for jti, exp in self._revoked_tokens.items() if exp <= now]
        for jti in expired:
            del self._revoked_tokens[jti]
        expired_subjects = [s for s, (_, exp) in self._subject_cutoffs.items() if exp <= now]
        for subject in expired_subjects:
            del self._subject_cutoffs[subject]

        if expired or expired_subjects:
            logger.debug(
                "Revocation store cleanup: evicted %d token and %d subject entries",
                len(expired),
                len(expired_subjects),
            )

    async def revoke(self, jti: str, ttl_seconds: float) -> bool:
        now = self._clock()
        self._maybe_cleanup(now)
        if ttl_seconds <= 0:
            return False
        expires_at = now + ttl_seconds
        current = self._revoked_tokens.get(jti)
        if current is not None and current > now:
            self._revoked_tokens[jti] = max(current, expires_at)
            return False
        self._revoked_tokens[jti] = expires_at
        return True

    async def is_revoked(self, jti: str) -> bool:
        now = self._clock()
        self._maybe_cleanup(now)
        exp = self._revoked_tokens.get(jti)
        if exp is None:
            return False
        if exp <= now:
            del self._revoked_tokens[jti]
            return False
        return True

    async def revoke_subject(self, subject: str, before: datetime, ttl_seconds: float) -> None:
        now = self._clock()
        if ttl_seconds <= 0:
            return
        current = self._subject_cutoffs.get(subject)
        if current is not None and current[1] > now and current[0] >= before:
            return
        self._subject_cutoffs[subject] = (before, now + ttl_seconds)

    async def subject_revoked_before(self, subject: str) -> datetime | None:
        entry = self._subject_cutoffs.get(subject)
        if entry is None:
            return None
        cutoff, exp = entry
        if exp <= self._clock():
            del self._subject_cutoffs[subject]
            return None
        return cutoff

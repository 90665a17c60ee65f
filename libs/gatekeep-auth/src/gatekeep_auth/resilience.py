"""Bounded, fail-closed calls into the revocation and rate-limit stores."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from gatekeep_auth.errors import StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors that mean "the store did not answer", as opposed to programming errors.
_STORE_FAILURES = (StoreUnavailable, asyncio.TimeoutError, OSError)


async def call_store(
    operation: Callable[[], Awaitable[T]],
    *,
    timeout: float,
    retries: int = 0,
    what: str = "store",
) -> T:
    """Run *operation* with a timeout, retrying at most *retries* times.

    *operation* is a zero-argument callable so each attempt gets a fresh
    awaitable. Timeouts count as failures. Once the attempts are exhausted
    the last failure is re-raised as :class:`StoreUnavailable`; callers turn
    that into a rejection, never an admission.
    """
    attempt = 0
    while True:
        try:
            return await asyncio.wait_for(operation(), timeout)
        except _STORE_FAILURES as exc:
            if attempt >= retries:
                raise StoreUnavailable(f"{what} unavailable after {attempt + 1} attempt(s)") from exc
            attempt += 1
            logger.warning(
                "Store call failed, retrying: op=%s attempt=%d error=%s",
                what,
                attempt,
                type(exc).__name__,
                extra={"event": "store_retry", "op": what, "attempt": attempt},
            )

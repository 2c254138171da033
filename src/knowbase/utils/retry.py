"""Retry with capped exponential backoff for transient provider failures.

Only rate limits, server errors and network failures are retried. Bad
requests, auth and validation errors fail on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from knowbase.errors import ProviderError, TransientProviderError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
NON_RETRYABLE_STATUS_CODES = frozenset({400, 401, 403, 404, 422})


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt + 1`` (``attempt`` is 0-based)."""
        return min(self.initial_delay * (self.multiplier**attempt), self.max_delay)


def _status_code(error: BaseException) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(error, "status", None)
    return status if isinstance(status, int) else None


def is_retryable_error(error: BaseException) -> bool:
    """Classify ``error`` as transient (retry) or permanent (fail now)."""
    status = _status_code(error)
    if status in NON_RETRYABLE_STATUS_CODES:
        return False
    if isinstance(error, TransientProviderError):
        return True
    if status in RETRYABLE_STATUS_CODES:
        return True
    if isinstance(error, ProviderError):
        return False
    if isinstance(error, (ConnectionResetError, ConnectionRefusedError, TimeoutError)):
        return True
    return "timeout" in str(error).lower()


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    name: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``operation()`` retrying transient failures per ``policy``."""
    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        try:
            result = await operation()
        except Exception as exc:
            status = _status_code(exc)
            if not is_retryable_error(exc):
                LOGGER.warning("%s failed with non-retryable error (status: %s): %s", name, status, exc)
                raise
            if attempt >= policy.max_retries:
                LOGGER.error("%s failed after %d attempts: %s", name, attempt + 1, exc)
                raise

            delay = policy.delay_for(attempt)
            retry_after = getattr(exc, "retry_after", None)
            if retry_after:
                delay = max(float(retry_after), delay)
            LOGGER.warning(
                "%s attempt %d/%d failed (status: %s), retrying in %.2fs",
                name,
                attempt + 1,
                policy.max_retries + 1,
                status,
                delay,
            )
            await sleep(delay)
            attempt += 1
            continue

        if attempt > 0:
            LOGGER.info("%s succeeded on attempt %d/%d", name, attempt + 1, policy.max_retries + 1)
        return result

"""Async retry with exponential backoff for idempotent platform reads.

Only the webhook listing query is wrapped. Mutations and the OAuth code
exchange are single attempts: a retried create can register a duplicate
subscription and a retried exchange replays a single-use code.

Transient failures are 429/5xx responses and connect/read timeouts. A
Retry-After header on the response overrides the computed backoff.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from dataclasses import dataclass
from typing import Any, Callable

import httpx

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule: ``base_delay * 2**attempt`` capped at ``max_delay``, +/- jitter."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.3

    def delay_for(self, attempt: int, response: httpx.Response | None = None) -> float:
        if response is not None:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    return min(float(retry_after), self.max_delay)
                except ValueError:
                    logger.debug("Ignoring non-numeric Retry-After: %r", retry_after)

        delay = min(self.base_delay * (2**attempt), self.max_delay)
        spread = delay * self.jitter
        return max(0.0, delay + random.uniform(-spread, spread))


LISTING_RETRY = RetryPolicy()


def transient_reason(exc: BaseException) -> str | None:
    """Short description if ``exc`` is worth retrying, else None."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return f"HTTP {status}" if status in RETRYABLE_STATUS_CODES else None
    if isinstance(exc, (httpx.ConnectError, httpx.ReadTimeout)):
        return type(exc).__name__
    return None


def retry_with_backoff(policy: RetryPolicy = LISTING_RETRY) -> Callable:
    """Decorator for coroutine functions; re-raises the last error when out of attempts."""

    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            while True:
                try:
                    return await fn(*args, **kwargs)
                except (httpx.HTTPStatusError, httpx.ConnectError, httpx.ReadTimeout) as e:
                    reason = transient_reason(e)
                    if reason is None or attempt >= policy.max_retries:
                        raise
                    response = e.response if isinstance(e, httpx.HTTPStatusError) else None
                    delay = policy.delay_for(attempt, response)
                    attempt += 1
                    logger.warning(
                        "Retrying %s (%s), attempt %d/%d in %.1fs",
                        fn.__name__,
                        reason,
                        attempt,
                        policy.max_retries,
                        delay,
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator

"""
Retry wrapper for shielded planning and submission calls.

Proof fetches and submissions can fail transiently: the indexer lags behind
the chain, a concurrent spend invalidates the proof, or the RPC provider rate
limits. Those failures are retried with exponential backoff (1s, 2s, 4s);
everything else propagates on the first attempt.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from privacypay.errors import RETRYABLE_ERRORS, StaleProof

LOG = logging.getLogger("privacypay.retry")
LOG.addHandler(logging.NullHandler())

T = TypeVar("T")


class RetryError(Exception):
    """Raised when a call still fails after all retries"""

    def __init__(self, message: str, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.last_error = last_error


async def run_with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    description: str = "Operation",
    on_attempt: Optional[Callable[[int, str], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await `fn()` with automatic retry on transient failures.

    Args:
        fn: zero-argument coroutine factory; called again on every attempt so
            each retry re-selects inputs and re-fetches the proof
        max_retries: maximum attempts (default: 3)
        description: human-readable description for logging
        on_attempt: optional callback called on each attempt: (attempt_num, status_msg)
        sleep: awaitable sleep, injectable for tests

    Raises:
        RetryError: if the call fails with a retryable error on every attempt
    """
    last_error: Optional[BaseException] = None

    for attempt in range(max_retries):
        status_msg = f"{description} (attempt {attempt + 1}/{max_retries})..."
        LOG.info(status_msg)
        if on_attempt:
            on_attempt(attempt + 1, status_msg)

        try:
            result = await fn()
            LOG.info(f"{description} successful")
            return result
        except RETRYABLE_ERRORS as e:
            last_error = e
            if attempt == max_retries - 1:
                break
            if isinstance(e, StaleProof):
                # state moved under us; a fresh proof is all that is needed
                wait_time = 0.5
                LOG.warning(f"{description}: proof is stale, retrying with fresh inputs")
            else:
                wait_time = 2 ** attempt
                LOG.warning(f"{description} failed ({e.__class__.__name__}); retrying in {wait_time}s")
            await sleep(wait_time)

    raise RetryError(
        f"{description} failed after {max_retries} attempts. Last error: {last_error}",
        last_error=last_error,
    )

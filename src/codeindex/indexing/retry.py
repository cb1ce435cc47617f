"""
Bounded exponential backoff for embedding providers.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog

from codeindex.errors import TransientProviderError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RETRIABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def is_retriable_status(status_code: int | None) -> bool:
    """Rate limiting, request timeouts and server-side failures are retriable."""
    if status_code is None:
        return False
    return status_code in RETRIABLE_STATUS_CODES or status_code >= 500


def compute_delay(attempt: int, initial: float, maximum: float) -> float:
    """
    Delay before retry number ``attempt`` (0-based).

    Args:
        attempt: Number of failed attempts so far, minus one.
        initial: Delay before the first retry, in seconds.
        maximum: Cap on any single delay, in seconds.

    Returns:
        ``initial * 2**attempt`` capped at ``maximum``.
    """
    if attempt < 0:
        raise ValueError("attempt must be non-negative")
    return min(initial * (2**attempt), maximum)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    is_retriable: Callable[[Exception], bool],
    max_attempts: int = 3,
    initial_delay: float = 0.5,
    max_delay: float = 30.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    status_of: Callable[[Exception], int | None] | None = None,
) -> T:
    """
    Call ``fn`` until it succeeds, a fatal error occurs, or attempts run out.

    Args:
        fn: Zero-argument coroutine factory, called once per attempt.
        is_retriable: Classifies an exception as retriable.
        max_attempts: Total number of attempts, including the first.
        initial_delay: Seconds to wait before the first retry.
        max_delay: Cap on a single wait.
        sleep: Awaitable sleep, replaceable in tests.
        status_of: Extracts an HTTP status from an exception for reporting.

    Returns:
        Whatever ``fn`` returns.

    Raises:
        TransientProviderError: A retriable failure persisted past the cap.
        Exception: Any non-retriable error, unchanged.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            if not is_retriable(e):
                raise

            attempt += 1
            status = status_of(e) if status_of else None
            if attempt >= max_attempts:
                logger.error(
                    "Retries exhausted",
                    attempts=attempt,
                    status=status,
                    error=str(e),
                )
                raise TransientProviderError(
                    f"Failed after {attempt} attempts: {e}",
                    status_code=status,
                ) from e

            delay = compute_delay(attempt - 1, initial_delay, max_delay)
            logger.warning(
                "Retriable provider error, backing off",
                attempt=attempt,
                delay=delay,
                status=status,
                error=str(e),
            )
            await sleep(delay)

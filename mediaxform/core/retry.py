"""
Bounded retries for transient I/O failures.

Only TransientIOError is retried; every other error propagates on the first
attempt. Delays grow exponentially: base, 2*base, 4*base, ...
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from mediaxform.core.config import settings
from mediaxform.core.exceptions import TransientIOError
from mediaxform.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    op_name: str,
    attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
) -> T:
    """
    Run an async I/O call, retrying TransientIOError with backoff.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt
        op_name: Name used in log events (e.g. "blob_get")
        attempts: Total attempts including the first (defaults to settings)
        base_delay: Initial backoff in seconds (defaults to settings)

    Raises:
        TransientIOError: when every attempt failed
    """
    if attempts is None:
        attempts = settings.IO_RETRY_ATTEMPTS
    if base_delay is None:
        base_delay = settings.IO_RETRY_BASE_DELAY_SECONDS
    attempts = max(1, attempts)

    for attempt in range(attempts):
        try:
            return await operation()
        except TransientIOError as e:
            if attempt + 1 >= attempts:
                logger.error(
                    "io_retries_exhausted",
                    operation=op_name,
                    attempts=attempts,
                    error=str(e)
                )
                raise
            delay = base_delay * (2 ** attempt)
            logger.warning(
                "io_retry_scheduled",
                operation=op_name,
                attempt=attempt + 1,
                delay_seconds=delay,
                error=str(e)
            )
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")

"""Retry helper for individual remote mutations."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from doorman.errors import DoormanError, ProviderApiError
from doorman.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def is_retryable(error: Exception) -> bool:
    """Return whether an error from a mutation is worth retrying.

    Provider errors carry their own classification. Other doorman errors
    describe local problems that a retry will not fix.
    """
    if isinstance(error, ProviderApiError):
        return error.retryable
    return not isinstance(error, DoormanError)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: bool = True,
    description: str = "operation",
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run an async operation, retrying on retryable failures.

    Args:
        operation: Zero-argument coroutine factory.
        max_attempts: Total number of attempts.
        delay: Base delay in seconds between attempts.
        backoff: Multiply the delay by the attempt number when True.
        description: Short label used in log messages.
        sleep: Awaitable sleep function.

    Returns:
        The operation's result.

    Raises:
        Exception: The first non-retryable error, or the last error once
            attempts are exhausted.
    """
    last_error: Exception | None = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e):
                raise
            last_error = e
            if attempt == max_attempts:
                break
            wait = delay * attempt if backoff else delay
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.1f seconds: %s",
                description,
                attempt,
                max_attempts,
                wait,
                e,
            )
            await sleep(wait)

    if last_error:
        logger.error("%s failed after %d attempts", description, max_attempts)
        raise last_error
    raise RuntimeError("Unexpected retry loop exit")

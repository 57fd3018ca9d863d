"""
Exponential-backoff retry for read-only operations.

Only idempotent calls (contract views, receipt lookups, indexer queries) go
through here. Transaction submission is never retried blindly; re-submission
of reverted transactions belongs to the transaction supervisor.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import structlog


logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0  # seconds


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    operation_name: str = "operation",
) -> T:
    """
    Run ``operation`` and retry it on failure with a doubling delay.

    With the defaults the waits are 1s, 2s, 4s before giving up; the last
    exception is re-raised to the caller.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        retries: Number of retries after the first attempt
        base_delay: Delay before the first retry, in seconds
        operation_name: Label used in log output

    Returns:
        Whatever ``operation`` returns on its first successful attempt
    """
    delay = base_delay
    attempt = 0

    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= retries:
                logger.error(
                    "Operation failed, retries exhausted",
                    operation=operation_name,
                    attempts=attempt + 1,
                    error=str(e)
                )
                raise

            logger.warning(
                "Operation failed, retrying",
                operation=operation_name,
                attempt=attempt + 1,
                retry_in=delay,
                error=str(e)
            )
            if delay > 0:
                await asyncio.sleep(delay)
            delay *= 2
            attempt += 1


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget shared by every read path of one automation context."""
    retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BASE_DELAY

    async def run(self, operation: Callable[[], Awaitable[T]], operation_name: str = "operation") -> T:
        return await retry_with_backoff(
            operation,
            retries=self.retries,
            base_delay=self.base_delay,
            operation_name=operation_name,
        )

"""Bounded exponential-backoff retry for remote calls."""

import asyncio
from typing import Awaitable, Callable, Tuple, Type, TypeVar

import structlog

from .errors import ExhaustedRetries

logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    *,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or ``max_attempts`` is reached.

    After failed attempt ``k`` the call waits ``initial_delay * 2 ** (k - 1)``
    seconds. Errors outside ``retry_on`` propagate immediately. When every
    attempt fails, ``ExhaustedRetries`` is raised carrying the last error.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    last_error: BaseException | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            last_error = e
            if attempt < max_attempts:
                delay = initial_delay * (2 ** (attempt - 1))
                logger.warning("Attempt failed, retrying",
                               operation=description,
                               attempt=attempt,
                               max_attempts=max_attempts,
                               retry_in_seconds=delay,
                               error=str(e))
                await sleep(delay)

    logger.error("All attempts failed",
                 operation=description,
                 attempts=max_attempts,
                 error=str(last_error))
    raise ExhaustedRetries(last_error, max_attempts) from last_error


class RetryExecutor:
    """A configured retry policy that can be handed to collaborators."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.retry_on = retry_on
        self.sleep = sleep

    async def execute(self, operation: Callable[[], Awaitable[T]], description: str = "operation") -> T:
        return await retry(
            operation,
            self.max_attempts,
            self.initial_delay,
            retry_on=self.retry_on,
            sleep=self.sleep,
            description=description,
        )

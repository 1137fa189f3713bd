"""Bounded retry with exponential backoff for awaitable operations."""

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior with exponential backoff."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 300.0,
        backoff_multiplier: float = 2.0,
    ):
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt using exponential backoff.

        Args:
            attempt: The current attempt number (1-indexed).

        Returns:
            The delay in seconds, capped at max_delay.
        """
        if attempt < 1:
            return self.initial_delay

        delay = self.initial_delay * math.pow(self.backoff_multiplier, attempt - 1)
        return min(delay, self.max_delay)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``operation`` until it succeeds or the attempts run out.

    Only exceptions matching ``retry_on`` are retried; anything else escapes
    immediately. The last matching exception is re-raised once
    ``config.max_attempts`` attempts have failed.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except retry_on as exc:
            if attempt >= config.max_attempts:
                raise
            delay = config.calculate_delay(attempt)
            logger.warning(
                f"{description} failed (attempt {attempt}/{config.max_attempts}), "
                f"retrying in {delay:.2f}s: {exc}"
            )
            await sleep(delay)
            attempt += 1

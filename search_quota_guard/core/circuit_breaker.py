"""
Consecutive-failure circuit breaker.

Imposes exponential backoff before dispatch once calls keep failing.
Advisory only: the caller still attempts the request after waiting.
"""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Tracks consecutive failures in process memory.

    The counter is reset to 0 on any success and incremented on any
    failure. It is never persisted.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 10000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0")
        if base_delay_ms <= 0 or max_delay_ms <= 0:
            raise ValueError("backoff delays must be > 0")
        self.failure_threshold = failure_threshold
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self._sleep = sleep
        self.consecutive_failures = 0

    def should_break(self) -> bool:
        return self.consecutive_failures >= self.failure_threshold

    def backoff_delay(self) -> float:
        """Backoff in seconds: min(base * 2^failures, max)."""
        delay_ms = min(self.base_delay_ms * (2 ** self.consecutive_failures), self.max_delay_ms)
        return delay_ms / 1000

    async def wait_for_backoff(self) -> None:
        delay = self.backoff_delay()
        logger.info(
            "Backing off %.1fs after %d consecutive failures",
            delay, self.consecutive_failures,
        )
        await self._sleep(delay)

    def on_result(self, succeeded: bool) -> None:
        if succeeded:
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1

    def reset(self) -> None:
        self.consecutive_failures = 0

"""Retry policy with exponential backoff for upstream requests."""
import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_MAX_DELAY_SECONDS = 30.0

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS
    sleep: SleepFn = field(default=asyncio.sleep, compare=False)

    def delay_for(self, attempt: int) -> float:
        """Delay after a failed attempt (1-based): base * 2**attempt, capped."""
        return min(self.base_delay * (2**attempt), self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    async def backoff(self, attempt: int) -> float:
        delay = self.delay_for(attempt)
        await self.sleep(delay)
        return delay

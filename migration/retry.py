"""
Retry policy shared by the source paginator and the batch writer.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Tuple, Type, TypeVar
from core.exceptions import RetryableError
import logging

logger = logging.getLogger(__name__)

T = TypeVar("T")


def linear_backoff(base_delay: float) -> Callable[[int], float]:
    """Backoff proportional to the attempt number (1-based)"""
    def backoff(attempt: int) -> float:
        return base_delay * attempt
    return backoff


@dataclass(frozen=True)
class RetryPolicy:
    """
    Maximum attempts plus a backoff function.

    `call` runs an operation until it succeeds, raises an exception outside
    `retry_on`, or runs out of attempts. On exhaustion the last exception is
    re-raised so callers can translate it into their own fatal error.
    """

    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default_factory=lambda: linear_backoff(1.0))
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def linear(cls, max_attempts: int, base_delay: float) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, backoff=linear_backoff(base_delay))

    def delay_for(self, attempt: int) -> float:
        return max(0.0, self.backoff(attempt))

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        retry_on: Tuple[Type[BaseException], ...] = (RetryableError,),
        description: str = "operation"
    ) -> T:
        attempt = 1
        while True:
            try:
                return await operation()
            except retry_on as e:
                if attempt >= self.max_attempts:
                    logger.error(f"{description} failed after {attempt} attempts: {e}")
                    raise

                delay = self.delay_for(attempt)
                retry_after = getattr(e, "retry_after", None)
                if retry_after:
                    delay = max(delay, float(retry_after))

                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.max_attempts}). "
                    f"Retrying in {delay:.1f}s: {e}"
                )
                await self.sleep(delay)
                attempt += 1

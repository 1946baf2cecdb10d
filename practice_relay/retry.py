"""
Retry Policy Engine.

Runs an async operation up to ``max_retries`` times with exponential backoff and
jitter. Delay before attempt n+1 is

    min(base_delay * 2 ** (n - 1) + uniform(0, jitter), max_delay)

Only retryable errors are retried. When attempts run out the last error is wrapped
in a RETRY_EXHAUSTED error, which is itself never retryable.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from practice_relay.clock import Clock
from practice_relay.errors import SessionError, classify

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Backoff parameters plus the clock used to wait between attempts."""

    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 10.0
    jitter: float = 1.0
    clock: Clock = field(default_factory=Clock)
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")

    def compute_delay(self, attempt: int) -> float:
        """Delay in seconds after failed attempt ``attempt`` (1-based)."""
        backoff = self.base_delay * (2 ** (attempt - 1))
        return min(backoff + self.rng.uniform(0, self.jitter), self.max_delay)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
    ) -> T:
        """
        Run ``operation`` with retries.

        Args:
            operation: Zero-argument coroutine function
            operation_name: Label used in log lines

        Returns:
            The operation's result

        Raises:
            SessionError: The first non-retryable error, or RETRY_EXHAUSTED
            Exception: Unclassified exceptions, unchanged and without retry
        """
        for attempt in range(1, self.max_retries + 1):
            try:
                return await operation()
            except Exception as exc:
                error = classify(exc)
                if error is None:
                    raise
                if not error.retryable:
                    if error is exc:
                        raise
                    raise error from exc

                logger.warning(
                    "{} failed (attempt {}/{}): {}",
                    operation_name,
                    attempt,
                    self.max_retries,
                    error.message,
                )
                if attempt == self.max_retries:
                    logger.error("{} failed after {} attempts: {}", operation_name, attempt, error.message)
                    raise SessionError.retry_exhausted(
                        f"Operation failed after {attempt} attempts: {error.message}",
                        cause=error,
                    ) from exc

                delay = self.compute_delay(attempt)
                logger.info("Retrying {} in {:.0f}ms", operation_name, delay * 1000)
                await self.clock.sleep(delay)

        raise RuntimeError("max_retries must be at least 1")

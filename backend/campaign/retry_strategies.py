"""Retry strategy for run processing.

Exponential backoff (with optional jitter), used by the scheduler for
deferred task resumption and by the in-process job queue for start-run
jobs.

Usage:
    strategy = RetryStrategy.exponential(max_retries=3, base_delay=120.0)
    delay = strategy.compute_delay(attempt)          # seconds until next try
    result = await execute_with_retry(job, strategy, sleep=fake_sleep)
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class RetryStrategy:
    """Exponential backoff for a unit of run work."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 600.0
    jitter: bool = True
    jitter_range: float = 0.25

    @classmethod
    def exponential(
        cls,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 600.0,
        jitter: bool = True,
    ) -> 'RetryStrategy':
        """Exponential backoff: delay = base_delay * 2 ** (attempt - 1)."""
        return cls(
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=jitter,
        )

    def compute_delay(self, attempt: int) -> float:
        """Compute the delay in seconds for a given attempt number (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

        if self.jitter and delay > 0:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))

        return round(delay, 3)

    def should_retry(self, attempt: int, error: Optional[Exception] = None) -> bool:
        """Whether another attempt is allowed after ``attempt`` failures.

        Errors that carry a ``retryable`` attribute (the delivery errors) are
        retried only when it is true; otherwise only timeouts and connection
        failures are retried.
        """
        if attempt >= self.max_retries:
            return False

        if error is None:
            return True

        retryable = getattr(error, "retryable", None)
        if retryable is not None:
            return bool(retryable)

        return isinstance(error, (TimeoutError, ConnectionError))


async def execute_with_retry(
    func: Callable[..., Awaitable],
    strategy: RetryStrategy,
    *args,
    sleep: Callable[[float], Awaitable] = asyncio.sleep,
    **kwargs,
):
    """Execute an async callable with the given retry strategy.

    Args:
        func: Async callable to execute.
        strategy: RetryStrategy instance.
        sleep: Awaitable used to wait between attempts (replaced in tests).

    Returns:
        The result of func(*args, **kwargs).

    Raises:
        The last exception if all retries are exhausted or it is not retryable.
    """
    attempt = 0

    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            attempt += 1

            if not strategy.should_retry(attempt, e):
                raise

            delay = strategy.compute_delay(attempt)
            logger.info(
                "Retrying after failure",
                attempt=attempt,
                max_retries=strategy.max_retries,
                delay=delay,
                error=str(e),
            )
            await sleep(delay)

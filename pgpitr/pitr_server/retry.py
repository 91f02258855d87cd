"""
Retry policy shared by every component that touches storage.

Every network operation (upload, download, checksum fetch, list) goes through
RetryPolicy.run(), which applies a per-attempt timeout and exponential backoff
between attempts. Only transient failures are retried; everything else is
propagated on the first occurrence.

Classification:
    - TransientStorageError, asyncio.TimeoutError, ConnectionError: retried
    - CorruptionError, ArtifactNotFoundError and anything else: fatal

Invariants:
    - An operation is attempted at most max_attempts times
    - Exhausting the budget raises RetryBudgetExhausted, never returns None
    - Corruption is never retried here (callers decide on a single re-fetch)

How to change safely:
    - Keep backoff bounded by max_delay so schedulers stay predictable
    - New retryable types must be genuinely transient
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from .errors import ArtifactNotFoundError, CorruptionError, RetryBudgetExhausted, TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    TransientStorageError,
    asyncio.TimeoutError,
    ConnectionError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff with a per-attempt timeout.

    Attributes:
        max_attempts: Maximum attempts (including the first)
        base_delay: Delay before the first retry, in seconds
        multiplier: Backoff multiplier between retries
        max_delay: Upper bound for a single delay, in seconds
        timeout: Per-attempt timeout in seconds (None disables)
        jitter: Fraction of random jitter added to each delay

    Example:
        >>> policy = RetryPolicy(max_attempts=3, base_delay=0.1)
        >>> data = await policy.run("get wal", storage.get, key)
    """

    max_attempts: int = 5
    base_delay: float = 0.2
    multiplier: float = 2.0
    max_delay: float = 30.0
    timeout: float | None = 300.0
    jitter: float = 0.1

    @classmethod
    def from_config(cls, config: Any) -> RetryPolicy:
        """Build a policy from a RetryConfig section."""
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay_ms / 1000,
            multiplier=config.multiplier,
            max_delay=config.max_delay_ms / 1000,
            timeout=config.operation_timeout_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given (1-based) failed attempt."""
        delay = min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay += delay * self.jitter * random.random()
        return delay

    @staticmethod
    def is_retryable(error: BaseException) -> bool:
        if isinstance(error, (CorruptionError, ArtifactNotFoundError)):
            return False
        return isinstance(error, RETRYABLE_ERRORS)

    async def run(
        self,
        operation: str,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Run an async operation under this policy.

        Args:
            operation: Name used in logs and in the exhaustion error
            fn: Coroutine function to call
            *args: Positional arguments for fn
            **kwargs: Keyword arguments for fn

        Returns:
            Result of the first successful attempt

        Raises:
            RetryBudgetExhausted: If every attempt failed transiently
            Exception: Any non-retryable error, unchanged
        """
        last_error: BaseException | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                if self.timeout is None:
                    return await fn(*args, **kwargs)
                return await asyncio.wait_for(fn(*args, **kwargs), timeout=self.timeout)
            except Exception as e:
                if not self.is_retryable(e):
                    raise
                last_error = e
                if attempt == self.max_attempts:
                    break
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{operation} failed (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay:.2f}s: {e}",
                    extra={"operation": operation, "attempt": attempt},
                )
                await asyncio.sleep(delay)

        logger.error(
            f"{operation} exhausted retry budget",
            extra={"operation": operation, "attempts": self.max_attempts},
        )
        raise RetryBudgetExhausted(operation, self.max_attempts, last_error)

"""
Retry policy shared by the upload and download engines.

    delay = min(max_delay, base_delay * 2**attempt) * jitter(0.5..1.0)

A server-provided Retry-After replaces the computed delay (still capped).
Only errors the classifier accepts are retried; anything else propagates
on the first occurrence.
"""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, TypeVar

from b2cli.exceptions import RetryExhaustedError, TransportError
from b2cli.logging import get_logger
from b2cli.models.config import RetryConfig

logger = get_logger(__name__)

T = TypeVar("T")

Classifier = Callable[[BaseException], bool]


def is_transient(error: BaseException) -> bool:
    """Default classifier: timeouts, connection errors, 408/429 and 5xx."""
    return isinstance(error, TransportError) and error.transient


class RetryPolicy:
    """
    Run an async operation under a bounded retry budget.

    Example:
        >>> policy = RetryPolicy(max_attempts=5, base_delay=1.0)
        >>> data = await policy.run(lambda: transport.call("b2_get_upload_url", ...))
    """

    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 64.0,
        classifier: Classifier = is_transient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.classifier = classifier
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: RetryConfig,
        classifier: Classifier = is_transient,
    ) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay_seconds,
            max_delay=config.max_delay_seconds,
            classifier=classifier,
        )

    def delay_for(self, attempt: int, error: BaseException | None = None) -> float:
        """Seconds to wait after the given zero-based failed attempt."""
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            return min(float(retry_after), self.max_delay)
        delay = min(self.max_delay, self.base_delay * (2**attempt))
        return delay * random.uniform(0.5, 1.0)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        description: str = "request",
        on_retry: Callable[[int, BaseException], None] | None = None,
    ) -> T:
        """
        Run ``operation`` until it succeeds or the budget is spent.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt.
            description: Used in log messages.
            on_retry: Callback(attempt, error) before each backoff sleep.

        Raises:
            RetryExhaustedError: Every attempt failed with a transient error.
        """
        last_error: BaseException | None = None
        for attempt in range(self.max_attempts):
            try:
                return await operation()
            except Exception as e:
                if not self.classifier(e):
                    raise
                last_error = e
                if attempt + 1 >= self.max_attempts:
                    break
                delay = self.delay_for(attempt, e)
                logger.warning(
                    f"{description} failed (attempt {attempt + 1}/{self.max_attempts}): "
                    f"{e}; retrying in {delay:.1f}s"
                )
                if on_retry is not None:
                    on_retry(attempt, e)
                await self._sleep(delay)

        assert last_error is not None
        raise RetryExhaustedError(self.max_attempts, last_error)


__all__ = ["RetryPolicy", "is_transient", "Classifier"]

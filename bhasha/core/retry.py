"""Retry logic for outbound provider calls."""

import asyncio
from dataclasses import dataclass
from typing import Callable, TypeVar, Optional
from functools import wraps
import structlog

log = structlog.get_logger()

T = TypeVar('T')


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    ``exponential_base=1.0`` gives a fixed backoff of ``base_delay``.
    """
    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 30.0
    exponential_base: float = 1.0
    retryable_exceptions: tuple = (Exception,)

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (0-based)."""
        return min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)


# Provider submission: 3 attempts, fixed 2 second backoff
SUBMIT_RETRY = RetryConfig(max_attempts=3, base_delay=2.0, exponential_base=1.0)

# Polling and cancellation are retried by the next scheduled tick instead
NO_RETRY = RetryConfig(max_attempts=1)


def with_retry(config: Optional[RetryConfig] = None):
    """Decorator retrying an async callable on the configured exceptions.

    Args:
        config: Retry configuration (uses defaults if None)

    Example:
        @with_retry(RetryConfig(max_attempts=5))
        async def submit():
            return await client.post(...)
    """
    config = config or RetryConfig()

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            last_exception = None

            for attempt in range(config.max_attempts):
                try:
                    return await func(*args, **kwargs)
                except config.retryable_exceptions as e:
                    last_exception = e

                    if attempt < config.max_attempts - 1:
                        delay = config.delay_for(attempt)
                        log.warning(
                            "retry_attempt",
                            attempt=attempt + 1,
                            max_attempts=config.max_attempts,
                            delay=delay,
                            error=str(e),
                            function=func.__name__
                        )
                        await asyncio.sleep(delay)
                    else:
                        log.error(
                            "retry_exhausted",
                            attempts=config.max_attempts,
                            error=str(e),
                            function=func.__name__
                        )

            raise last_exception

        return wrapper
    return decorator

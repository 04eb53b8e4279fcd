"""Error recovery mechanisms for bridgerelay.

Retry policies and exponential backoff shared by the chain clients and
the relay workers.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from ..logging import LogContext, get_logger
from .exceptions import RelayError, TransportError

logger = get_logger(__name__)


@dataclass
class RetryPolicy:
    """Retry policy configuration."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: Tuple[Type[BaseException], ...] = field(
        default_factory=lambda: (TransportError,)
    )

    def get_delay(self, attempt: int) -> float:
        """Get delay for the given attempt."""
        if attempt <= 0:
            return 0.0

        # Exponential backoff
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))

        # Cap at max delay
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay *= random.uniform(0.5, 1.5)

        return delay

    def is_retryable(self, exception: BaseException) -> bool:
        """Check if exception is retryable under this policy."""
        if isinstance(exception, RelayError) and not exception.retryable:
            return False
        return isinstance(exception, self.retryable_exceptions)


async def retry_async(
    func: Callable[..., Awaitable[Any]],
    *args,
    policy: Optional[RetryPolicy] = None,
    operation: str = "operation",
    on_retry: Optional[Callable[[BaseException, int], None]] = None,
    on_exhausted: Optional[Callable[[BaseException, int], BaseException]] = None,
    **kwargs,
) -> Any:
    """Await ``func`` with retries and exponential backoff.

    Non-retryable exceptions propagate immediately. ``on_retry(exc,
    attempt)`` runs before each backoff sleep. When every attempt has
    failed, ``on_exhausted(last_exception, attempts)`` builds the exception
    to raise; without it the last exception is re-raised.
    """
    policy = policy or RetryPolicy()
    last_exception: Optional[BaseException] = None

    for attempt in range(policy.max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not policy.is_retryable(e):
                raise
            last_exception = e

            if attempt >= policy.max_retries:
                break

            delay = policy.get_delay(attempt + 1)
            logger.warning(
                f"Retry attempt {attempt + 1}/{policy.max_retries} for operation "
                f"'{operation}' after {delay:.2f}s delay. Error: {e}",
                context=LogContext(component="retry"),
            )
            if on_retry is not None:
                on_retry(e, attempt + 1)
            await asyncio.sleep(delay)

    attempts = policy.max_retries + 1
    if on_exhausted is not None:
        raise on_exhausted(last_exception, attempts) from last_exception
    raise last_exception

"""Exponential backoff for retryable operations."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from chat_relay import constants
from chat_relay.errors import ChannelError, SurfaceNotFound
from chat_relay.models.stats import BackoffState

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS: Tuple[Type[BaseException], ...] = (ChannelError, SurfaceNotFound)


def is_rate_limited(error: BaseException) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in constants.RATE_LIMIT_MARKERS)


class ExponentialBackoff:
    """Retry an async operation with ``min(base * 2**retry_count, max_delay)`` delays.

    Rate-limit shaped failures wait ``rate_limit_delay`` instead. The retry
    count resets after a success, and after ``max_retries`` failed retries,
    at which point the original error is re-raised.
    """

    def __init__(
        self,
        state: Optional[BackoffState] = None,
        base_delay: float = constants.BACKOFF_BASE_DELAY,
        max_delay: float = constants.BACKOFF_MAX_DELAY,
        max_retries: int = constants.BACKOFF_MAX_RETRIES,
        rate_limit_delay: float = constants.RATE_LIMIT_DELAY,
        retry_on: Tuple[Type[BaseException], ...] = RETRYABLE_ERRORS,
    ):
        self.state = state if state is not None else BackoffState()
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_retries = max_retries
        self.rate_limit_delay = rate_limit_delay
        self.retry_on = retry_on

    def next_delay(self, error: BaseException) -> float:
        if is_rate_limited(error):
            self.state.is_rate_limited = True
            return self.rate_limit_delay
        self.state.is_rate_limited = False
        return min(self.base_delay * (2**self.state.retry_count), self.max_delay)

    async def run(self, operation: Callable[[], Awaitable[T]], label: str = "operation") -> T:
        while True:
            try:
                result = await operation()
            except self.retry_on as e:
                if self.state.retry_count >= self.max_retries:
                    logger.warning(f"{label} failed after {self.state.retry_count} retries: {e}")
                    self.state.retry_count = 0
                    self.state.is_rate_limited = False
                    raise
                delay = self.next_delay(e)
                self.state.retry_count += 1
                logger.info(
                    f"{label} failed ({e}); retry {self.state.retry_count}/{self.max_retries} "
                    f"in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
            else:
                self.state.retry_count = 0
                self.state.is_rate_limited = False
                return result

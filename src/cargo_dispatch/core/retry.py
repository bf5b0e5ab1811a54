"""Bounded retries with exponential backoff for blocking outbound calls."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from .exceptions import TransientError

T = TypeVar("T")
logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 30.0
    retryable_exceptions: tuple[type[Exception], ...] = field(
        default_factory=lambda: (TransientError,)
    )

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (self.multiplier**attempt), self.max_delay)


def with_retry_sync(
    operation: Callable[[], T],
    config: RetryConfig | None = None,
    operation_name: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation``, retrying transient failures up to ``config.max_attempts`` times.

    Anything outside ``config.retryable_exceptions`` propagates on the first
    attempt. After the last attempt the transient error itself is re-raised
    so callers can map it to their own error type.
    """
    config = config or RetryConfig()

    attempt = 1
    while True:
        try:
            return operation()
        except config.retryable_exceptions as e:
            if attempt == config.max_attempts:
                logger.error(f"{operation_name} gave up after {attempt} attempts: {e}")
                raise

            delay = config.delay_for(attempt - 1)
            logger.warning(
                f"{operation_name} attempt {attempt}/{config.max_attempts} failed, "
                f"retrying in {delay:.2f}s: {e}"
            )
            sleep(delay)
            attempt += 1

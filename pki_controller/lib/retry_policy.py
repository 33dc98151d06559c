"""Bounded retry policy with exponential backoff."""

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Retry budget and backoff schedule.

    - max_attempts: total number of attempts, including the first
    - base_delay: delay before the second attempt, in seconds
    - max_delay: upper bound for any single delay
    - jitter: fraction of each delay randomised, 0 disables
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0
    jitter: float = 0.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def should_retry(self, attempt: int) -> bool:
        """Return True if another attempt may follow attempt number ``attempt`` (1-based)."""
        return attempt < self.max_attempts

    def get_delay(self, attempt: int) -> float:
        """Return the delay after attempt number ``attempt`` (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= 1 - random.uniform(0, self.jitter)
        return delay

    def call(
        self,
        func: Callable[[], T],
        is_retryable: Callable[[Exception], bool],
        description: str = "operation",
    ) -> T:
        """Call ``func`` until it succeeds or the budget is spent.

        Exceptions for which ``is_retryable`` is False, and the last retryable
        exception once the budget is spent, propagate unchanged.
        """
        attempt = 1
        while True:
            try:
                return func()
            except Exception as e:
                if not is_retryable(e) or not self.should_retry(attempt):
                    raise
                delay = self.get_delay(attempt)
                logger.warning(
                    "%s attempt %d/%d failed, retrying in %.2fs: %s",
                    description,
                    attempt,
                    self.max_attempts,
                    delay,
                    e,
                )
                self.sleep(delay)
                attempt += 1

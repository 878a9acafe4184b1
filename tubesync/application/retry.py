import logging
import time
from typing import Callable, Optional, TypeVar

from tubesync.domain.errors import RateLimited, TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RetryPolicy:
    """Bounded retry with exponential backoff for transient provider errors.

    Only TransientNetworkError (and its RateLimited subclass) is retried; any
    other exception propagates on the first occurrence.
    """

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay_sec: float = 1.0,
                 max_delay_sec: float = 8.0,
                 sleep: Callable[[float], None] = time.sleep):
        """Initialize retry policy.

        Args:
            max_attempts: Total attempts including the first one
            base_delay_sec: Backoff before the second attempt; doubles afterwards
            max_delay_sec: Upper bound for a single wait
            sleep: Sleep function, replaceable in tests
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay_sec = base_delay_sec
        self.max_delay_sec = max_delay_sec
        self._sleep = sleep

    def backoff(self, attempt: int, error: Optional[Exception] = None) -> float:
        """Seconds to wait after the given failed attempt (1-based)."""
        delay = self.base_delay_sec * (2 ** (attempt - 1))
        if isinstance(error, RateLimited):
            # Rate limits tell us how long to wait
            delay = max(delay, error.retry_after_ms / 1000.0)
        return min(delay, self.max_delay_sec)

    def run(self, operation: Callable[[], T], description: str = "operation") -> T:
        """Call operation until it succeeds or attempts are exhausted.

        Raises:
            TransientNetworkError: the last transient error once attempts run out
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return operation()
            except TransientNetworkError as e:
                if attempt >= self.max_attempts:
                    logger.error(f"{description} failed after {attempt} attempts: {e}")
                    raise
                delay = self.backoff(attempt, e)
                logger.warning(f"{description} failed (attempt {attempt}/{self.max_attempts}), "
                               f"retrying in {delay:.1f}s: {e}")
                self._sleep(delay)

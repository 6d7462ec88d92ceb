from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def jittered_delay(low: float, high: float) -> float:
    """Return a uniformly random delay in ``[low, high]``, in the caller's unit."""
    return random.uniform(low, high)


class ExponentialBackoff:
    """Run an operation with bounded exponential backoff.

    The first call is attempt 0; up to ``max_retries`` further attempts are
    made as long as ``is_retryable`` accepts the raised exception. Anything
    else propagates immediately.
    """

    def __init__(
        self,
        initial_delay: float = 1.0,
        max_delay: float = 5.0,
        multiplier: float = 2.0,
        max_retries: int = 2,
        jitter_factor: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.max_retries = max_retries
        self.jitter_factor = jitter_factor
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        delay = min(self.initial_delay * self.multiplier ** attempt, self.max_delay)
        return delay + random.uniform(0, delay * self.jitter_factor)

    def execute(
        self,
        operation: Callable[[int], T],
        is_retryable: Optional[Callable[[Exception], bool]] = None,
    ) -> T:
        attempt = 0
        while True:
            try:
                return operation(attempt)
            except Exception as exc:
                retryable = is_retryable(exc) if is_retryable else True
                if not retryable or attempt >= self.max_retries:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"Attempt {attempt + 1} failed ({exc}); retrying in {delay:.2f}s"
                )
                self._sleep(delay)
                attempt += 1

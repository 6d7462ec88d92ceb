"""Failure-rate circuit breaker state."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from ..constants import CIRCUIT_THRESHOLD, CIRCUIT_WINDOW_SECONDS


class CircuitBreakerState(BaseModel):
    """Failure counter for one component.

    The breaker opens once ``failure_count`` reaches the threshold inside the
    window that starts at ``first_failure_at``. A failure recorded after the
    window has elapsed restarts the count at 1.
    """

    component: str = "workflow"
    failure_count: int = 0
    first_failure_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    is_open: bool = False

    def record_failure(
        self,
        now: datetime,
        threshold: int = CIRCUIT_THRESHOLD,
        window_seconds: float = CIRCUIT_WINDOW_SECONDS,
    ) -> "CircuitBreakerState":
        window = timedelta(seconds=window_seconds)
        if (
            self.failure_count == 0
            or self.first_failure_at is None
            or now - self.first_failure_at > window
        ):
            self.failure_count = 1
            self.first_failure_at = now
            self.is_open = False
        else:
            self.failure_count += 1
        self.last_failure_at = now
        if self.failure_count >= threshold:
            self.is_open = True
        return self

    def reset(self) -> "CircuitBreakerState":
        self.failure_count = 0
        self.first_failure_at = None
        self.last_failure_at = None
        self.is_open = False
        return self

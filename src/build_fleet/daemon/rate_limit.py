"""Backoff gate for issue-tracker API calls."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """Shared tracker backoff deadline plus a consecutive-failure circuit breaker.

    After `failure_threshold` failures in a row the deadline moves out by
    `base_backoff_seconds * 2**(n - threshold)`, capped at
    `max_backoff_seconds`. Any success closes the breaker again.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = 3,
        base_backoff_seconds: int = 30,
        max_backoff_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.base_backoff_seconds = base_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.clock = clock
        self.backoff_until = 0.0
        self.consecutive_failures = 0

    def is_rate_limited(self, now: float | None = None) -> bool:
        moment = self.clock() if now is None else now
        return moment < self.backoff_until

    def remaining_seconds(self, now: float | None = None) -> float:
        moment = self.clock() if now is None else now
        return max(0.0, self.backoff_until - moment)

    def set_backoff(self, seconds: float) -> float:
        """Push the deadline `seconds` from now; never shortens an existing one."""

        self.backoff_until = max(self.backoff_until, self.clock() + seconds)
        return self.backoff_until

    def record_failure(self) -> int | None:
        """Count a failed tracker call; return backoff seconds if the breaker tripped."""

        self.consecutive_failures += 1
        if self.consecutive_failures < self.failure_threshold:
            return None
        shift = self.consecutive_failures - self.failure_threshold
        backoff = min(self.base_backoff_seconds * (2**shift), self.max_backoff_seconds)
        self.set_backoff(backoff)
        logger.warning(
            "Tracker rate-limit circuit breaker: backing off %ss after %s failures",
            backoff,
            self.consecutive_failures,
        )
        return backoff

    def record_success(self) -> None:
        if self.consecutive_failures:
            logger.info("Tracker calls recovered after %s failures", self.consecutive_failures)
        self.consecutive_failures = 0
        self.backoff_until = 0.0

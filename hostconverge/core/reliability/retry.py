"""
Retry policy — exponential backoff with jitter for transient failures.

Only TransientApplyError is ever retried. The wait is interruptible:
when a cancellation event is given, setting it ends the wait early and
tells the caller to stop retrying.
"""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass

from hostconverge.core.models.policy import ExecutionPolicy

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    max_retries: int = 2
    base_delay: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.3                       # up to +30% of the delay
    sleep: Callable[[float], None] | None = None

    @classmethod
    def from_policy(
        cls,
        policy: ExecutionPolicy,
        sleep: Callable[[float], None] | None = None,
    ) -> RetryPolicy:
        return cls(
            max_retries=policy.max_retries,
            base_delay=policy.retry_base_delay,
            max_delay=policy.retry_max_delay,
            sleep=sleep,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay + random.uniform(0, delay * self.jitter)

    def wait(self, attempt: int, cancel: threading.Event | None = None) -> bool:
        """Sleep before a retry. Returns False if cancelled meanwhile."""
        delay = self.delay(attempt)
        logger.debug("Retry %d/%d in %.1fs", attempt, self.max_retries, delay)
        if self.sleep is not None:
            self.sleep(delay)
            return not (cancel is not None and cancel.is_set())
        if cancel is not None:
            return not cancel.wait(delay)
        threading.Event().wait(delay)
        return True

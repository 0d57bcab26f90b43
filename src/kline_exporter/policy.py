"""
Backoff policy for retrying transient kline fetch failures.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Callable, Optional

MAX_BACKOFF_MS = 60_000


@dataclass
class RetryPolicy:
    """Capped exponential backoff with additive jitter.

    A positive server hint wins over the exponential curve (still capped).
    ``max_attempts=None`` means transient failures are retried until they
    succeed or the job is cleared.
    """

    base_backoff_ms: int = 1000
    max_backoff_ms: int = MAX_BACKOFF_MS
    max_exponent: int = 8
    jitter_ms: int = 1000
    max_attempts: Optional[int] = None
    rand: Callable[[], float] = random.random

    def __post_init__(self) -> None:
        if self.max_backoff_ms < 0:
            raise ValueError("max_backoff_ms must be >= 0")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1 or None")

    def compute_wait_ms(self, attempts: int, hint_ms: Optional[int] = None) -> int:
        if hint_ms is not None and hint_ms > 0:
            return min(int(hint_ms), self.max_backoff_ms)

        exponent = min(max(attempts, 0), self.max_exponent)
        exponential = min(self.max_backoff_ms, self.base_backoff_ms * 2**exponent)
        jitter = int(self.rand() * self.jitter_ms) if self.jitter_ms > 0 else 0
        return min(self.max_backoff_ms, exponential + jitter)

    def exhausted(self, attempts: int) -> bool:
        return self.max_attempts is not None and attempts >= self.max_attempts


def compute_wait(attempts: int, hint_ms: Optional[int] = None) -> int:
    """Wait before the next attempt under the default policy, in milliseconds."""
    return RetryPolicy().compute_wait_ms(attempts, hint_ms)

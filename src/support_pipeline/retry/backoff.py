"""
Exponential backoff with jitter for failed jobs.

delay(n) = min(max_delay, base * 2 ** (n - 1)), then a random value in
[delay / 2, delay] so jobs that failed together do not retry together.
"""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Retry delay policy for the job queue.

    Attributes:
        base_seconds: Delay before the first retry (before jitter)
        max_seconds: Upper bound of any single delay
    """

    base_seconds: float = 30.0
    max_seconds: float = 3600.0

    def __post_init__(self) -> None:
        if self.base_seconds <= 0:
            raise ValueError("base_seconds must be > 0")
        if self.max_seconds < self.base_seconds:
            raise ValueError("max_seconds must be >= base_seconds")

    def delay_seconds(self, attempt: int, rng: Callable[[float, float], float] = random.uniform) -> float:
        """
        Delay before retrying after the given (1-indexed) failed attempt.

        Args:
            attempt: Number of failed attempts so far (>= 1)
            rng: Uniform random source, injectable for tests
        """
        exponent = max(attempt, 1) - 1
        ceiling = min(self.max_seconds, self.base_seconds * (2 ** min(exponent, 32)))
        return rng(ceiling / 2, ceiling)

    def next_retry_at(self, attempt: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.delay_seconds(attempt))

"""Retry policy — exponential backoff with jitter.

  delay = min(base * 2^attempt + jitter, max_delay)
  jitter = random(0, base * 0.5)

The orchestrator owns the retry loop; this module only decides how many
attempts a transport gets and how long to wait between them.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Callable


def _default_jitter(base_delay: float) -> float:
    return random.uniform(0, base_delay * 0.5)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters for one transport.

    Usage:
        policy = RetryPolicy(max_attempts=2, base_delay=1.0)

        for attempt in range(policy.max_attempts):
            try:
                return await send()
            except TransportError:
                if not policy.should_retry(attempt):
                    raise
                await asyncio.sleep(policy.backoff(attempt))
    """

    max_attempts: int = 2
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: Callable[[float], float] = _default_jitter

    def should_retry(self, attempt: int) -> bool:
        """True when another attempt remains after ``attempt`` (0-based)."""
        return attempt + 1 < self.max_attempts

    def backoff(self, attempt: int) -> float:
        return calculate_backoff(attempt, self.base_delay, self.max_delay, self.jitter)


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    jitter: Callable[[float], float] = _default_jitter,
) -> float:
    """Calculate exponential backoff with jitter, capped at ``max_delay``."""
    exponential = base_delay * (2**attempt)
    return min(exponential + jitter(base_delay), max_delay)


def no_jitter(base_delay: float) -> float:
    return 0.0

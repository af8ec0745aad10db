"""Rate Limiter — per-key request windows.

Tracks how many requests each key (``"<provider>:<operation>"``) has made in
its current window. A window opens on the first request and resets once
``window_seconds`` have elapsed since it opened.

Never raises for an exhausted window: ``check_limit`` returns
``allowed=False`` together with the reset time and the caller decides what
to do. All mutation happens on the event loop between awaits, so no locks.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from smartcrm.ai.types import RateLimitConfig, RateLimitResult

logger = logging.getLogger(__name__)


@dataclass
class _Window:
    """Request counters for a single key."""

    window_start: float
    limit: int
    window_seconds: float
    request_count: int = 0
    success_count: int = 0
    failure_count: int = 0

    @property
    def reset_at(self) -> float:
        return self.window_start + self.window_seconds

    def roll(self, now: float, config: RateLimitConfig) -> None:
        """Start a fresh window if the current one has elapsed."""
        self.limit = config.max_requests
        self.window_seconds = config.window_seconds
        if now >= self.reset_at:
            self.window_start = now
            self.request_count = 0
            self.success_count = 0
            self.failure_count = 0


class RateLimiter:
    """Windowed request counter keyed by provider and operation.

    Usage:
        limiter = RateLimiter()
        config = RateLimitConfig(max_requests=50, window_seconds=60)

        result = limiter.check_limit("openai:scoring", config)
        if not result.allowed:
            # caller waits result.retry_after seconds or tries elsewhere
            ...

        # After the call:
        limiter.increment("openai:scoring", success=True, config=config)
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    def _get_window(self, key: str, config: RateLimitConfig, now: float) -> _Window:
        window = self._windows.get(key)
        if window is None:
            window = _Window(window_start=now, limit=config.max_requests, window_seconds=config.window_seconds)
            self._windows[key] = window
        else:
            window.roll(now, config)
        return window

    def check_limit(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        """Decide whether one more request for ``key`` fits in the current window."""
        now = self._clock()
        window = self._get_window(key, config, now)
        remaining = max(0, window.limit - window.request_count)

        if remaining <= 0:
            retry_after = max(window.reset_at - now, 0.0)
            logger.debug("Rate limit reached for %s, resets in %.1fs", key, retry_after)
            return RateLimitResult(allowed=False, reset_at=window.reset_at, remaining=0, retry_after=retry_after)

        return RateLimitResult(allowed=True, reset_at=window.reset_at, remaining=remaining)

    def increment(self, key: str, success: bool, config: RateLimitConfig) -> None:
        """Record an outbound request and its outcome."""
        now = self._clock()
        window = self._get_window(key, config, now)
        window.request_count += 1
        if success:
            window.success_count += 1
        else:
            window.failure_count += 1

    def reset(self, key: str | None = None) -> None:
        """Forget one key's window, or all of them."""
        if key is None:
            self._windows.clear()
        else:
            self._windows.pop(key, None)

    def get_stats(self, key: str) -> dict:
        """Get current window stats for a key."""
        window = self._windows.get(key)
        if window is None:
            return {"key": key, "request_count": 0, "success_count": 0, "failure_count": 0, "limit": None}

        now = self._clock()
        expired = now >= window.reset_at
        return {
            "key": key,
            "request_count": 0 if expired else window.request_count,
            "success_count": 0 if expired else window.success_count,
            "failure_count": 0 if expired else window.failure_count,
            "limit": window.limit,
            "window_seconds": window.window_seconds,
            "resets_in": 0.0 if expired else round(window.reset_at - now, 3),
        }

    def get_all_stats(self) -> list[dict]:
        """Get stats for every key seen so far."""
        return [self.get_stats(k) for k in self._windows]

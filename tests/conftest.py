from __future__ import annotations

import pytest
from helpers import FakeClock, make_settings

from smartcrm.ai.cache import ResponseCache
from smartcrm.ai.orchestrator import AIOrchestrator
from smartcrm.ai.providers import ProviderRegistry
from smartcrm.ai.rate_limiter import RateLimiter
from smartcrm.ai.retry import RetryPolicy, no_jitter
from smartcrm.ai.transports import BaseTransport
from smartcrm.ai.types import FallbackMode, ProviderName, RateLimitConfig


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_orchestrator(clock):
    """Build an orchestrator over fake transports with fake time.

    Retry sleeps are recorded on ``orchestrator.sleeps`` instead of waiting.
    """

    def _make(
        transports: dict[ProviderName, BaseTransport],
        *,
        mode: FallbackMode = FallbackMode.DIRECT_FIRST,
        proxy_enabled: bool = True,
        max_attempts: int = 2,
        rate_limit: RateLimitConfig | None = None,
        cache: ResponseCache | None = None,
        poll_interval: float = 0.01,
        debug_fallback: bool = False,
        **settings_overrides,
    ) -> AIOrchestrator:
        cfg = make_settings(proxy_enabled=proxy_enabled, **settings_overrides)
        sleeps: list[float] = []

        async def fake_sleep(delay: float) -> None:
            sleeps.append(delay)

        orchestrator = AIOrchestrator(
            registry=ProviderRegistry.from_settings(cfg, clock=clock),
            transports=transports,
            cache=cache if cache is not None else ResponseCache(clock=clock),
            rate_limiter=RateLimiter(clock=clock),
            fallback_mode=mode,
            proxy_enabled=proxy_enabled,
            retry_policy=RetryPolicy(max_attempts=max_attempts, base_delay=1.0, max_delay=10.0, jitter=no_jitter),
            rate_limit=rate_limit,
            poll_interval=poll_interval,
            debug_fallback=debug_fallback,
            sleep=fake_sleep,
            clock=clock,
        )
        orchestrator.sleeps = sleeps
        return orchestrator

    return _make

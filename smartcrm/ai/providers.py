"""Provider Registry — availability, rolling performance and selection.

Each provider carries:
  - availability (credentials present) and an enable flag
  - a coarse request budget (``remaining`` until ``reset_at``)
  - rolling performance stats (EMA latency and success rate, cost)

Selection is a pure function of that state plus the request, so the same
state and request always pick the same provider.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable

from smartcrm.ai.errors import NoProviderAvailableError, RateLimitedError
from smartcrm.ai.types import (
    AIRequest,
    FallbackMode,
    OperationType,
    ProviderName,
    RequestPriority,
    TransportType,
)
from smartcrm.core.config import Settings, missing_provider_credentials

logger = logging.getLogger(__name__)

EMA_ALPHA = 0.1
BUDGET_WINDOW_SECONDS = 60.0


@dataclass
class ProviderBudget:
    """Coarse per-provider request budget, refilled every window."""

    remaining: int
    reset_at: float
    ceiling: int


@dataclass
class PerformanceStats:
    avg_response_time_ms: float
    success_rate: float  # 0.0 - 1.0
    cost_per_1k_tokens: float
    total_calls: int = 0
    failed_calls: int = 0


@dataclass
class ProviderState:
    name: ProviderName
    transport: TransportType
    available: bool  # credentials present
    enabled: bool
    model: str
    priority: int  # registry order, lower = listed first
    budget: ProviderBudget
    performance: PerformanceStats
    capabilities: frozenset[OperationType] = field(default_factory=lambda: frozenset(OperationType))

    @property
    def usable(self) -> bool:
        return self.available and self.enabled

    def to_dict(self) -> dict:
        return {
            "name": self.name.value,
            "transport": self.transport.value,
            "available": self.available,
            "enabled": self.enabled,
            "model": self.model,
            "priority": self.priority,
            "rate_limit": {
                "remaining": self.budget.remaining,
                "reset_at": self.budget.reset_at,
                "ceiling": self.budget.ceiling,
            },
            "performance": {
                "avg_response_time_ms": round(self.performance.avg_response_time_ms, 1),
                "success_rate": round(self.performance.success_rate, 4),
                "cost_per_1k_tokens": self.performance.cost_per_1k_tokens,
                "total_calls": self.performance.total_calls,
                "failed_calls": self.performance.failed_calls,
            },
        }


# Starting stats before any call has been observed
PROVIDER_DEFAULTS: dict[ProviderName, dict] = {
    ProviderName.OPENAI: {"avg_ms": 1200.0, "success_rate": 0.98, "cost": 0.003, "ceiling": 100},
    ProviderName.GEMINI: {"avg_ms": 1500.0, "success_rate": 0.95, "cost": 0.001, "ceiling": 60},
    ProviderName.ANTHROPIC: {"avg_ms": 1800.0, "success_rate": 0.97, "cost": 0.004, "ceiling": 50},
    ProviderName.PROXY: {"avg_ms": 2000.0, "success_rate": 0.85, "cost": 0.002, "ceiling": 100},
}


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScoringWeights:
    """Weights for ranking providers. Higher score wins."""

    success_weight: float = 40.0
    latency_baseline_ms: float = 3000.0
    latency_divisor: float = 100.0
    cost_baseline: float = 0.01
    cost_multiplier: float = 1000.0
    urgent_latency_divisor: float = 50.0
    task_affinity: dict[tuple[OperationType, ProviderName], float] = field(
        default_factory=lambda: {
            (OperationType.SCORING, ProviderName.OPENAI): 10.0,
            (OperationType.INSIGHTS, ProviderName.OPENAI): 10.0,
            (OperationType.ENRICHMENT, ProviderName.OPENAI): 5.0,
            (OperationType.PREDICTIVE_ANALYTICS, ProviderName.OPENAI): 5.0,
            (OperationType.AUTOMATION_SUGGESTIONS, ProviderName.OPENAI): 5.0,
            (OperationType.RELATIONSHIP_MAPPING, ProviderName.GEMINI): 5.0,
        }
    )


def score_provider(state: ProviderState, request: AIRequest, weights: ScoringWeights) -> float:
    perf = state.performance
    latency_headroom = weights.latency_baseline_ms - perf.avg_response_time_ms

    score = perf.success_rate * weights.success_weight
    score += latency_headroom / weights.latency_divisor

    if request.priority == RequestPriority.LOW:
        score += (weights.cost_baseline - perf.cost_per_1k_tokens) * weights.cost_multiplier

    score += weights.task_affinity.get((request.operation, state.name), 0.0)

    if request.priority == RequestPriority.URGENT:
        score += latency_headroom / weights.urgent_latency_divisor

    return score


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ProviderRegistry:
    """Runtime state for every provider, in preference order.

    Usage:
        registry = ProviderRegistry.from_settings(settings)

        provider = registry.select_provider(request, FallbackMode.DIRECT_FIRST)
        ...
        registry.record_call(provider.name, latency_ms=830, success=True)
    """

    def __init__(
        self,
        providers: list[ProviderState],
        weights: ScoringWeights | None = None,
        clock: Callable[[], float] = time.monotonic,
        budget_window: float = BUDGET_WINDOW_SECONDS,
        missing_credentials: list[str] | None = None,
    ):
        self._providers: dict[ProviderName, ProviderState] = {p.name: p for p in providers}
        self.weights = weights or ScoringWeights()
        self._clock = clock
        self.budget_window = budget_window
        self.missing_credentials = missing_credentials or []

    @classmethod
    def from_settings(
        cls,
        cfg: Settings,
        weights: ScoringWeights | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> ProviderRegistry:
        now = clock()
        specs = [
            (ProviderName.OPENAI, TransportType.DIRECT, bool(cfg.openai_api_key), cfg.openai_enabled, cfg.openai_model),
            (ProviderName.GEMINI, TransportType.DIRECT, bool(cfg.gemini_api_key), cfg.gemini_enabled, cfg.gemini_model),
            (
                ProviderName.ANTHROPIC,
                TransportType.DIRECT,
                bool(cfg.anthropic_api_key),
                cfg.anthropic_enabled,
                cfg.anthropic_model,
            ),
            (
                ProviderName.PROXY,
                TransportType.PROXY,
                bool(cfg.proxy_base_url and cfg.proxy_api_key),
                cfg.proxy_enabled,
                cfg.openai_model,
            ),
        ]

        providers = []
        for idx, (name, transport, available, enabled, model) in enumerate(specs):
            defaults = PROVIDER_DEFAULTS[name]
            providers.append(
                ProviderState(
                    name=name,
                    transport=transport,
                    available=available,
                    enabled=enabled,
                    model=model,
                    priority=idx,
                    budget=ProviderBudget(
                        remaining=defaults["ceiling"],
                        reset_at=now + BUDGET_WINDOW_SECONDS,
                        ceiling=defaults["ceiling"],
                    ),
                    performance=PerformanceStats(
                        avg_response_time_ms=defaults["avg_ms"],
                        success_rate=defaults["success_rate"],
                        cost_per_1k_tokens=defaults["cost"],
                    ),
                )
            )

        return cls(providers, weights=weights, clock=clock, missing_credentials=missing_provider_credentials(cfg))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, name: ProviderName) -> ProviderState | None:
        return self._providers.get(name)

    def all(self) -> list[ProviderState]:
        return list(self._providers.values())

    def _refill(self, state: ProviderState, now: float) -> None:
        if now > state.budget.reset_at:
            state.budget.remaining = state.budget.ceiling
            state.budget.reset_at = now + self.budget_window

    def available_providers(self, transport: TransportType | None = None) -> list[ProviderState]:
        """Usable providers with budget left, in registry order."""
        now = self._clock()
        result = []
        for state in self._providers.values():
            if not state.usable:
                continue
            self._refill(state, now)
            if state.budget.remaining <= 0:
                continue
            if transport is not None and state.transport != transport:
                continue
            result.append(state)
        return result

    def best_provider(
        self,
        request: AIRequest,
        transport: TransportType | None = None,
        exclude: ProviderName | None = None,
    ) -> ProviderState | None:
        candidates = [p for p in self.available_providers(transport) if p.name != exclude]
        candidates = [p for p in candidates if request.operation in p.capabilities]
        if not candidates:
            return None
        # max() returns the first of equal scores, so ties keep registry order
        return max(candidates, key=lambda p: score_provider(p, request, self.weights))

    def select_provider(self, request: AIRequest, mode: FallbackMode) -> ProviderState:
        """Pick the provider for ``request``.

        Raises:
            NoProviderAvailableError: no provider has credentials configured.
            RateLimitedError: providers exist but every budget is exhausted.
        """
        configured = [p for p in self._providers.values() if p.usable]
        if not configured:
            raise NoProviderAvailableError(
                "No AI provider is configured. Missing: " + (", ".join(self.missing_credentials) or "provider keys"),
                missing=self.missing_credentials,
            )

        candidates = self.available_providers()
        if not candidates:
            now = self._clock()
            retry_after = max(min(p.budget.reset_at for p in configured) - now, 0.0)
            raise RateLimitedError(
                f"rate limit exceeded, retry in {math.ceil(retry_after)} seconds",
                retry_after=retry_after,
            )

        preferred = request.options.preferred_provider
        if preferred is not None:
            for state in candidates:
                if state.name == preferred:
                    return state
            logger.debug("Preferred provider %s unavailable, selecting by mode", preferred.value)

        if mode == FallbackMode.PROXY_FIRST:
            proxy = self.best_provider(request, TransportType.PROXY)
            if proxy is not None:
                return proxy
        elif mode == FallbackMode.DIRECT_FIRST:
            direct = self.best_provider(request, TransportType.DIRECT)
            if direct is not None:
                return direct
            proxy = self.best_provider(request, TransportType.PROXY)
            if proxy is not None:
                return proxy

        best = self.best_provider(request)
        if best is None:
            raise NoProviderAvailableError(f"No provider supports operation {request.operation.value}")
        return best

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def record_call(self, name: ProviderName, latency_ms: float, success: bool) -> None:
        """Fold one observed call into the provider's rolling stats and budget."""
        state = self._providers.get(name)
        if state is None:
            return

        perf = state.performance
        perf.avg_response_time_ms = perf.avg_response_time_ms * (1 - EMA_ALPHA) + latency_ms * EMA_ALPHA
        perf.success_rate = perf.success_rate * (1 - EMA_ALPHA) + (1.0 if success else 0.0) * EMA_ALPHA
        perf.total_calls += 1
        if not success:
            perf.failed_calls += 1

        state.budget.remaining = max(0, state.budget.remaining - 1)
        self._refill(state, self._clock())

    def get_status(self) -> list[dict]:
        return [p.to_dict() for p in self._providers.values()]


def validate_provider_settings(cfg: Settings) -> list[str]:
    """Fail fast when no provider can be reached at all.

    Returns warnings for providers that are enabled but lack credentials.

    Raises:
        NoProviderAvailableError: every provider is disabled or missing credentials.
    """
    missing = missing_provider_credentials(cfg)
    configured = any(
        [
            cfg.openai_enabled and cfg.openai_api_key,
            cfg.gemini_enabled and cfg.gemini_api_key,
            cfg.anthropic_enabled and cfg.anthropic_api_key,
            cfg.proxy_enabled and cfg.proxy_base_url and cfg.proxy_api_key,
        ]
    )

    if not configured:
        raise NoProviderAvailableError(
            "No AI provider is configured. Set at least one of: " + (", ".join(missing) or "a provider API key"),
            missing=missing,
        )

    warnings = [f"{name} is not set; the matching provider stays unavailable" for name in missing]
    for warning in warnings:
        logger.warning(warning)
    return warnings

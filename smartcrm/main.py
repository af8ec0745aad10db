"""Process entry point: builds the AI orchestration objects and owns their lifetime.

Usage:
    async with ai_runtime() as orchestrator:
        response = await orchestrator.execute_immediate(
            {"operation": "scoring", "payload": {"contact": contact}}
        )

        contacts = create_contact_analysis(orchestrator, load_contact)
        bulk = await contacts.analyze_bulk(contact_ids)
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from smartcrm.ai.cache import ResponseCache
from smartcrm.ai.contact_analysis import ContactAnalysisService, ContactLoader
from smartcrm.ai.orchestrator import AIOrchestrator
from smartcrm.ai.providers import ProviderRegistry, validate_provider_settings
from smartcrm.ai.rate_limiter import RateLimiter
from smartcrm.ai.retry import RetryPolicy
from smartcrm.ai.transports import build_transports
from smartcrm.ai.types import FallbackMode, RateLimitConfig
from smartcrm.core.config import Settings, settings
from smartcrm.core.logging import setup_logging
from smartcrm.core.sentry import init_sentry

logger = logging.getLogger(__name__)


def create_orchestrator(cfg: Settings | None = None) -> AIOrchestrator:
    """Build a fully wired orchestrator from settings.

    Raises:
        NoProviderAvailableError: no provider has credentials configured.
    """
    cfg = cfg or settings
    validate_provider_settings(cfg)

    registry = ProviderRegistry.from_settings(cfg)
    cache = ResponseCache(
        max_entries=cfg.cache_max_entries,
        default_ttl=cfg.cache_default_ttl_seconds,
        snapshot_path=Path(cfg.cache_snapshot_path) if cfg.cache_snapshot_path else None,
    )

    return AIOrchestrator(
        registry=registry,
        transports=build_transports(cfg),
        cache=cache,
        rate_limiter=RateLimiter(),
        fallback_mode=FallbackMode(cfg.ai_fallback_mode),
        proxy_enabled=cfg.proxy_enabled,
        retry_policy=RetryPolicy(
            max_attempts=cfg.ai_max_retry_attempts,
            base_delay=cfg.ai_retry_base_delay,
            max_delay=cfg.ai_retry_max_delay,
        ),
        request_timeout=cfg.ai_request_timeout_seconds,
        rate_limit=RateLimitConfig(
            max_requests=cfg.ai_rate_limit_max_requests,
            window_seconds=cfg.ai_rate_limit_window_seconds,
        ),
        poll_interval=cfg.queue_poll_interval_seconds,
        debug_fallback=cfg.ai_debug_fallback,
    )


def create_contact_analysis(
    orchestrator: AIOrchestrator,
    contact_loader: ContactLoader,
    cfg: Settings | None = None,
) -> ContactAnalysisService:
    """Contact analysis over ``orchestrator`` with the bulk limits from settings."""
    cfg = cfg or settings
    return ContactAnalysisService(
        orchestrator,
        contact_loader=contact_loader,
        max_items=cfg.bulk_max_items,
        batch_size=cfg.bulk_batch_size,
        batch_delay=cfg.bulk_batch_delay_seconds,
    )


@asynccontextmanager
async def ai_runtime(cfg: Settings | None = None) -> AsyncIterator[AIOrchestrator]:
    """Run the orchestrator's background tasks for the duration of the block."""
    cfg = cfg or settings
    setup_logging(cfg)
    init_sentry(cfg)

    orchestrator = create_orchestrator(cfg)
    orchestrator.start()
    orchestrator.cache.start_sweeper(cfg.cache_sweep_interval_seconds)
    logger.info("SmartCRM AI runtime started (fallback mode: %s)", cfg.ai_fallback_mode)

    try:
        yield orchestrator
    finally:
        await orchestrator.stop()
        await orchestrator.cache.stop_sweeper()
        logger.info("SmartCRM AI runtime shut down")

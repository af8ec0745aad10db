"""Sentry error tracking for the AI layer.

Enabled only when SENTRY_DSN is set; ``init_sentry`` is a no-op otherwise.
Failed AI requests are logged at ERROR by the orchestrator, so the logging
integration turns them into Sentry events without explicit capture calls.
"""

import logging

from smartcrm.core.config import Settings, settings

logger = logging.getLogger(__name__)


def init_sentry(cfg: Settings | None = None) -> bool:
    """Initialize Sentry if a DSN is configured. Returns True when enabled."""
    cfg = cfg or settings
    if not cfg.sentry_dsn:
        logger.debug("Sentry DSN not configured, skipping")
        return False

    import sentry_sdk
    from sentry_sdk.integrations.asyncio import AsyncioIntegration
    from sentry_sdk.integrations.httpx import HttpxIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=cfg.sentry_dsn,
        environment=cfg.app_env,
        traces_sample_rate=0.1 if cfg.app_env == "production" else 1.0,
        # Prompts carry contact data
        send_default_pii=False,
        integrations=[
            AsyncioIntegration(),
            HttpxIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
    )
    sentry_sdk.set_tag("ai.fallback_mode", cfg.ai_fallback_mode)
    logger.info("Sentry initialized (env=%s, fallback=%s)", cfg.app_env, cfg.ai_fallback_mode)
    return True

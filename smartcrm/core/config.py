from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # OpenAI (direct)
    openai_api_key: str = ""
    openai_enabled: bool = True
    openai_model: str = "gpt-4o-mini"

    # Google Gemini (direct)
    gemini_api_key: str = ""
    gemini_enabled: bool = True
    gemini_model: str = "gemini-2.0-flash"

    # Anthropic (direct, off unless explicitly enabled)
    anthropic_api_key: str = ""
    anthropic_enabled: bool = False
    anthropic_model: str = "claude-3-5-haiku-latest"

    # Server-side proxy (serverless functions holding their own credentials)
    proxy_base_url: str = ""  # e.g. "https://<project>.supabase.co"
    proxy_api_key: str = ""
    proxy_enabled: bool = True

    # Orchestration
    ai_fallback_mode: Literal["direct_first", "proxy_first", "optimal"] = "direct_first"
    ai_max_retry_attempts: int = 2
    ai_request_timeout_seconds: float = 30.0
    ai_retry_base_delay: float = 1.0
    ai_retry_max_delay: float = 10.0
    ai_debug_fallback: bool = False

    # Per-provider request window
    ai_rate_limit_max_requests: int = 50
    ai_rate_limit_window_seconds: float = 60.0

    # Response cache
    cache_max_entries: int = 1000
    cache_default_ttl_seconds: float = 1800.0
    cache_snapshot_path: str = ".cache/smartcrm/ai_responses.json"  # empty string disables persistence
    cache_sweep_interval_seconds: float = 300.0

    # Queue pump
    queue_poll_interval_seconds: float = 0.1

    # Bulk analysis
    bulk_max_items: int = 50
    bulk_batch_size: int = 5
    bulk_batch_delay_seconds: float = 1.0

    # App
    app_env: str = "development"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable


settings = Settings()


def missing_provider_credentials(cfg: Settings) -> list[str]:
    """List the credentials that are absent for providers switched on in ``cfg``."""
    missing: list[str] = []

    if cfg.openai_enabled and not cfg.openai_api_key:
        missing.append("OPENAI_API_KEY")
    if cfg.gemini_enabled and not cfg.gemini_api_key:
        missing.append("GEMINI_API_KEY")
    if cfg.anthropic_enabled and not cfg.anthropic_api_key:
        missing.append("ANTHROPIC_API_KEY")
    if cfg.proxy_enabled:
        if not cfg.proxy_base_url:
            missing.append("PROXY_BASE_URL")
        if not cfg.proxy_api_key:
            missing.append("PROXY_API_KEY")

    return missing

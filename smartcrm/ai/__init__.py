"""AI Provider Orchestration Layer.

Single entry point for all AI operations in the CRM, with:
  - Provider Registry & Selection (direct vendors + server-side proxy)
  - Per-key Rate Limiter
  - Response Cache (per-operation TTL, tag invalidation, snapshot)
  - Prompt Builder & Response Normalizer (graceful JSON extraction)
  - Retry with exponential backoff and transport fallback
  - Priority request queue
"""
